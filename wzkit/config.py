"""
Settings for the command line tools, read from an optional YAML file such as:

    region: gms
    version: 83
    default_delay: 120
    cache_dir: ~/.cache/wzkit
"""

import dataclasses
import pathlib
from dataclasses import dataclass
from typing import Optional

import yaml

from wzkit.animation import DEFAULT_DELAY
from wzkit.crypto import KeyStream, iv_for_region


@dataclass(frozen=True)
class Settings:
    region: Optional[str] = None
    iv: Optional[str] = None
    version: Optional[int] = None
    default_delay: int = DEFAULT_DELAY
    cache_dir: Optional[pathlib.Path] = None
    verbosity: int = 0

    def key(self) -> Optional[KeyStream]:
        """
        The key to read archives with, or None to have it guessed. An explicit `iv` wins over `region`.
        """
        if self.iv is not None:
            return KeyStream(bytes.fromhex(self.iv))
        if self.region is not None:
            return KeyStream(iv_for_region(self.region))
        return None

    def override(self, **values) -> 'Settings':
        return dataclasses.replace(self, **{name: value for name, value in values.items() if value is not None})


def settings_from_dict(info: dict) -> Settings:
    known = {f.name for f in dataclasses.fields(Settings)}
    unknown = set(info) - known
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    settings = Settings(**info)

    if settings.iv is not None:
        iv = str(settings.iv).replace(' ', '')
        if len(iv) != 8:
            raise ValueError(f"iv must be 4 bytes of hex (is: {settings.iv!r})")
        bytes.fromhex(iv)
        settings = dataclasses.replace(settings, iv=iv)
    if settings.region is not None:
        iv_for_region(settings.region)
    if settings.cache_dir is not None:
        settings = dataclasses.replace(settings, cache_dir=pathlib.Path(settings.cache_dir).expanduser())
    if not isinstance(settings.default_delay, int) or settings.default_delay < 0:
        raise ValueError(f"default_delay must be non-negative (is: {settings.default_delay})")

    return settings


def load_settings(path) -> Settings:
    with pathlib.Path(path).open('r', encoding='utf-8') as f:
        info = yaml.safe_load(f) or {}
    if not isinstance(info, dict):
        raise ValueError(f"{path} must hold a mapping of settings")
    return settings_from_dict(info)
