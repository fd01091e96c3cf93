"""
Where archive bytes come from: local files, HTTP, and a blob cache that makes remote archives fetch-once.
"""

import logging
import os
import pathlib
import tempfile
from typing import Optional, Protocol
from urllib.parse import quote, urlparse

import requests

from wzkit.canvas import CanvasDecoder, DecodedImage
from wzkit.crypto import KeyStream
from wzkit.errors import FetchError
from wzkit.links import LinkResolver
from wzkit.nodes import Canvas, NodeTree
from wzkit.parser import parse_bytes


logger = logging.getLogger(__name__)


class ByteSource(Protocol):
    def fetch(self, identifier: str) -> bytes:
        ...


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def put(self, key: str, data: bytes) -> None:
        ...


def is_url(identifier: str) -> bool:
    return urlparse(identifier).scheme in ('http', 'https')


class FileSource:
    def fetch(self, identifier: str) -> bytes:
        try:
            return pathlib.Path(identifier).read_bytes()
        except OSError as e:
            raise FetchError(identifier, e.strerror or str(e)) from e


class HttpSource:
    """
    Fetches archives over HTTP(S). Timeouts are left to the `timeout` argument; nothing is retried.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, identifier: str) -> bytes:
        try:
            response = self.session.get(identifier, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(identifier, str(e)) from e
        return response.content


class DefaultSource:
    def __init__(self, http: Optional[HttpSource] = None, files: Optional[FileSource] = None):
        self.http = http or HttpSource()
        self.files = files or FileSource()

    def fetch(self, identifier: str) -> bytes:
        return (self.http if is_url(identifier) else self.files).fetch(identifier)


class MemoryCache:
    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self.blobs.get(key)

    def put(self, key: str, data: bytes) -> None:
        self.blobs[key] = bytes(data)


class DirectoryCache:
    """
    One file per key under a root directory. Writes go through a temporary file so readers never see half a blob.
    """

    def __init__(self, root):
        self.root = pathlib.Path(root)

    def _path(self, key: str) -> pathlib.Path:
        return self.root / quote(key, safe='')

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix='.partial-')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise


class CachedSource:
    """
    Looks in the cache first and only goes to the underlying source on a miss, storing what it got.
    """

    def __init__(self, source: ByteSource, cache: CacheStore):
        self.source = source
        self.cache = cache

    def fetch(self, identifier: str, cache_key: Optional[str] = None) -> bytes:
        cache_key = cache_key or identifier

        data = self.cache.get(cache_key)
        if data is not None:
            logger.info("Found %s in cache", cache_key)
            return data

        logger.info("%s not cached, fetching %s", cache_key, identifier)
        data = self.source.fetch(identifier)
        try:
            self.cache.put(cache_key, data)
        except OSError as e:
            logger.warning("Could not cache %s: %s", cache_key, e)
        return data


def open_source(settings) -> ByteSource:
    source = DefaultSource()
    if settings.cache_dir is not None:
        return CachedSource(source, DirectoryCache(settings.cache_dir))
    return source


def archive_name(identifier: str) -> str:
    if is_url(identifier):
        return pathlib.PurePosixPath(urlparse(identifier).path).name or identifier
    return pathlib.Path(identifier).name


def load_tree(
    source: ByteSource, identifier: str, key: Optional[KeyStream] = None, version: Optional[int] = None,
    name: Optional[str] = None, cancel=None,
) -> NodeTree:
    data = source.fetch(identifier)
    return parse_bytes(data, name or archive_name(identifier), key=key, version=version, cancel=cancel)


def load_canvas(source: ByteSource, identifier: str, path: str, key: Optional[KeyStream] = None) -> DecodedImage:
    """
    Fetches an archive and decodes the canvas at `path` in it, following links and canvas redirections.
    """
    tree = load_tree(source, identifier, key=key)
    node = LinkResolver(tree).resolve_canvas(tree.get(path))
    if not isinstance(node.kind, Canvas):
        raise TypeError(f"{tree.path_of(node)} is a {node.type_name} node, not a canvas")
    return CanvasDecoder(tree).decode(node)
