"""
Exception taxonomy for reading WZ archives.

Every error raised by the library derives from `WzError`. Errors that come in several flavors carry a `kind` enum
member so callers can branch on it without string matching.
"""

from enum import Enum
from typing import Optional, Union


class WzError(Exception):
    pass


class OutOfBounds(WzError):
    position: int
    expected_length: int
    available: int
    meaning: Optional[str]

    def __init__(self, position: int, expected_length: int, available: int, meaning: Optional[str] = None):
        self.position = position
        self.expected_length = expected_length
        self.available = available
        self.meaning = meaning

        super().__init__(
            f"At position {position}, expected {expected_length} "
            f"bytes{f' for {meaning}' if meaning is not None else ''}"
            f", but only {available} remain"
        )


class ParseErrorKind(Enum):
    MALFORMED_HEADER = 'MalformedHeader'
    TRUNCATED_NODE = 'TruncatedNode'
    UNKNOWN_TYPE_TAG = 'UnknownTypeTag'
    STRING_TABLE_INDEX_OUT_OF_RANGE = 'StringTableIndexOutOfRange'


class ParseError(WzError):
    kind: ParseErrorKind
    position: Optional[int]
    tag: Union[int, str, None]

    def __init__(
        self, kind: ParseErrorKind, message: str, position: Optional[int] = None, tag: Union[int, str, None] = None
    ):
        self.kind = kind
        self.position = position
        self.tag = tag

        where = f" at position {position}" if position is not None else ''
        super().__init__(f"{kind.value}{where}: {message}")

    @classmethod
    def unknown_tag(cls, tag: Union[int, str], position: int, meaning: str) -> 'ParseError':
        shown = f"0x{tag:02x}" if isinstance(tag, int) else repr(tag)
        return cls(ParseErrorKind.UNKNOWN_TYPE_TAG, f"unknown {meaning} {shown}", position=position, tag=tag)


class NotFound(WzError):
    path: str

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No node at path {path!r}")


class LinkErrorKind(Enum):
    DANGLING = 'Dangling'
    CYCLE = 'Cycle'


class LinkError(WzError):
    kind: LinkErrorKind
    link_path: str
    segment: Optional[str]

    def __init__(self, kind: LinkErrorKind, link_path: str, segment: Optional[str] = None):
        self.kind = kind
        self.link_path = link_path
        self.segment = segment

        if kind == LinkErrorKind.CYCLE:
            message = f"link chain through {link_path!r} loops back on itself"
        else:
            message = f"link {link_path!r} does not lead anywhere (no child {segment!r})"

        super().__init__(f"{kind.value}: {message}")


class DecodeErrorKind(Enum):
    SIZE_MISMATCH = 'SizeMismatch'
    UNSUPPORTED_FORMAT = 'UnsupportedFormat'
    CORRUPT_STREAM = 'CorruptStream'


class DecodeError(WzError):
    kind: DecodeErrorKind
    format_tag: Optional[int]

    def __init__(self, kind: DecodeErrorKind, message: str, format_tag: Optional[int] = None):
        self.kind = kind
        self.format_tag = format_tag
        super().__init__(f"{kind.value}: {message}")


class AssemblyError(WzError):
    pass


class NotAFrame(AssemblyError):
    name: str
    reason: str

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"NotAFrame({name!r}): {reason}")


class FetchError(WzError):
    identifier: str

    def __init__(self, identifier: str, reason: str):
        self.identifier = identifier
        super().__init__(f"Could not fetch {identifier!r}: {reason}")


class Cancelled(WzError):
    pass


def failure_kind(error: WzError) -> str:
    """
    Short name of the failure, as reported on the single diagnostic line of the command line tools.
    """
    kind = getattr(error, 'kind', None)
    if isinstance(kind, Enum):
        return f"{type(error).__name__}::{kind.value}"

    return type(error).__name__
