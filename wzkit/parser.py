"""
Builds a `NodeTree` out of the raw bytes of a WZ archive.

Two container shapes are understood:

- standalone `.img` files, which hold a single property tree starting at offset 0;
- `PKG1` `.wz` files, which hold a directory hierarchy whose leaves are images, each of them a property tree stored
  at an obfuscated offset.

Parsing is a single depth-first pass. Canvas and sound payloads are only located (offset and length), never
decompressed here. Any inconsistency aborts the whole parse with a `ParseError`; no partial tree is ever returned.
"""

import logging
import pathlib
from typing import Optional

from wzkit.crypto import GUESS_ORDER, KNOWN_IVS, KeyStream, encrypted_version, version_hash
from wzkit.cursor import ByteCursor
from wzkit.errors import Cancelled, OutOfBounds, ParseError, ParseErrorKind
from wzkit.nodes import (
    Archive, AudioBlob, Canvas, Convex, Directory, Float32, Float64, Image, Int16, Int32, Int64, Link, NodeTree,
    Null, StringValue, Vector2,
)


logger = logging.getLogger(__name__)

WZ_FILE_MAGIC = b'PKG1'
IMAGE_HEADER_TAG = 0x73
IMAGE_HEADER_NAME = 'Property'

MAX_GUESSED_VERSION = 1000

# property and directory nesting levels, far beyond anything real archives use
MAX_NESTING = 100

SOUND_HEADER_SIZE = 51

# directory entry tags
DIR_PADDING = 1
DIR_NAME_REF = 2
DIR_SUBDIRECTORY = 3
DIR_IMAGE = 4

# string block tags
STRING_INLINE = (0x00, 0x73)
STRING_REF = (0x01, 0x1B)


def _check_cancel(cancel):
    if cancel is not None and cancel.is_set():
        raise Cancelled("Parsing was cancelled")


class _ImageParser:
    """
    Reads the property tree of one image into the arena.
    """

    def __init__(self, tree: NodeTree, cursor: ByteCursor, image_offset: int, image_end: int, cancel=None):
        self.tree = tree
        self.cursor = cursor
        self.image_offset = image_offset
        self.image_end = image_end
        self.cancel = cancel

    def parse_image(self, node_index: int):
        cursor = self.cursor
        cursor.seek_absolute(self.image_offset)

        tag = cursor.read_u8('image header')
        if tag != IMAGE_HEADER_TAG:
            raise ParseError(
                ParseErrorKind.MALFORMED_HEADER, f"image does not start with 0x{IMAGE_HEADER_TAG:02x} (found 0x{tag:02x})",
                position=self.image_offset,
            )
        name = cursor.read_prefixed_string('image header')
        if name != IMAGE_HEADER_NAME:
            raise ParseError(
                ParseErrorKind.MALFORMED_HEADER, f"image header reads {name!r}, wrong key or not an image",
                position=self.image_offset,
            )
        cursor.skip(2, 'image header')

        self._parse_property_list(node_index, 0)

    def _read_string_block(self, meaning: str) -> str:
        cursor = self.cursor
        position = cursor.tell()
        tag = cursor.read_u8(meaning)

        if tag in STRING_INLINE:
            return cursor.read_prefixed_string(meaning)

        if tag in STRING_REF:
            target = self.image_offset + cursor.read_i32(meaning)
            if not self.image_offset <= target < self.image_end:
                raise ParseError(
                    ParseErrorKind.STRING_TABLE_INDEX_OUT_OF_RANGE,
                    f"{meaning} points to {target}, outside the image ({self.image_offset}..{self.image_end})",
                    position=position,
                )
            saved = cursor.tell()
            cursor.seek_absolute(target)
            text = cursor.read_prefixed_string(meaning)
            cursor.seek_absolute(saved)
            return text

        raise ParseError.unknown_tag(tag, position, f'string block tag for {meaning}')

    def _warn_duplicate(self, name: str, parent: int):
        logger.warning(
            "Duplicate child %r under %s, keeping the first one", name, self.tree.path_of(self.tree.node(parent))
        )

    def _add(self, name: str, kind, parent: int):
        node = self.tree.add_node(name, kind, parent)
        if node is None:
            self._warn_duplicate(name, parent)
        return node

    def _parse_property_list(self, parent: int, depth: int):
        cursor = self.cursor
        position = cursor.tell()
        count = cursor.read_compressed_int('property count')
        if count < 0:
            raise ParseError(ParseErrorKind.TRUNCATED_NODE, f"negative property count {count}", position=position)

        for _ in range(count):
            _check_cancel(self.cancel)

            name = self._read_string_block('property name')
            tag_position = cursor.tell()
            tag = cursor.read_u8('property type')

            if tag == 0:
                kind = Null()
            elif tag in (2, 11):
                kind = Int16(cursor.read_i16('short value'))
            elif tag in (3, 19):
                kind = Int32(cursor.read_compressed_int('int value'))
            elif tag == 20:
                kind = Int64(cursor.read_compressed_long('long value'))
            elif tag == 4:
                marker = cursor.read_u8('float marker')
                kind = Float32(cursor.read_f32('float value') if marker == 0x80 else 0.0)
            elif tag == 5:
                kind = Float64(cursor.read_f64('double value'))
            elif tag == 8:
                kind = StringValue(self._read_string_block('string value'))
            elif tag == 9:
                block_size = cursor.read_u32('extended block size')
                end = cursor.tell() + block_size
                if end > self.image_end:
                    raise ParseError(
                        ParseErrorKind.TRUNCATED_NODE, f"{name!r} extends past the end of its image",
                        position=tag_position,
                    )
                self._parse_extended(name, parent, depth)
                cursor.seek_absolute(end)
                continue
            else:
                raise ParseError.unknown_tag(tag, tag_position, f'property type of {name!r}')

            self._add(name, kind, parent)

    def _parse_extended(self, name: str, parent: int, depth: int):
        cursor = self.cursor
        position = cursor.tell()
        if depth >= MAX_NESTING:
            raise ParseError(
                ParseErrorKind.TRUNCATED_NODE, f"{name!r} is nested more than {MAX_NESTING} levels deep",
                position=position,
            )
        type_name = self._read_string_block('extended type')

        if name in self.tree.node(parent).children:
            self._warn_duplicate(name, parent)
            return

        if type_name == 'Property':
            cursor.skip(2, 'property header')
            node = self._add(name, Directory(), parent)
            self._parse_property_list(node.index, depth + 1)

        elif type_name == 'Canvas':
            self._parse_canvas(name, parent, depth)

        elif type_name == 'Shape2D#Vector2D':
            x = cursor.read_compressed_int('vector x')
            y = cursor.read_compressed_int('vector y')
            self._add(name, Vector2(x, y), parent)

        elif type_name == 'Shape2D#Convex2D':
            count = cursor.read_compressed_int('convex point count')
            node = self._add(name, Convex(), parent)
            for i in range(count):
                _check_cancel(self.cancel)
                self._parse_extended(str(i), node.index, depth + 1)

        elif type_name == 'Sound_DX8':
            self._parse_sound(name, parent)

        elif type_name == 'UOL':
            cursor.skip(1, 'link header')
            self._add(name, Link(self._read_string_block('link path')), parent)

        else:
            raise ParseError.unknown_tag(type_name, position, f'extended type of {name!r}')

    def _parse_canvas(self, name: str, parent: int, depth: int):
        cursor = self.cursor
        position = cursor.tell()

        # the dimensions follow the frame metadata, so the node gets its real kind once they are known
        node = self._add(name, Null(), parent)

        cursor.skip(1, 'canvas header')
        if cursor.read_u8('canvas child flag') == 1:
            cursor.skip(2, 'canvas child header')
            self._parse_property_list(node.index, depth + 1)

        width = cursor.read_compressed_int('canvas width')
        height = cursor.read_compressed_int('canvas height')
        format_tag = cursor.read_compressed_int('canvas format')
        format_tag += cursor.read_u8('canvas scale')
        cursor.skip(4, 'canvas reserved')
        length = cursor.read_i32('canvas payload length')

        if width <= 0 or height <= 0 or length < 1:
            raise ParseError(
                ParseErrorKind.TRUNCATED_NODE, f"canvas {name!r} has size {width}x{height} and {length} payload bytes",
                position=position,
            )

        cursor.skip(1, 'canvas payload marker')
        offset = cursor.tell()
        cursor.skip(length - 1, f'payload of canvas {name!r}')

        node.kind = Canvas(width, height, format_tag, offset, length - 1)

    def _parse_sound(self, name: str, parent: int):
        cursor = self.cursor

        cursor.skip(1, 'sound header')
        data_length = cursor.read_compressed_int('sound length')
        duration_ms = cursor.read_compressed_int('sound duration')

        header_start = cursor.tell()
        cursor.skip(SOUND_HEADER_SIZE, 'sound media type')
        format_length = cursor.read_u8('wave format length')
        cursor.skip(format_length, 'wave format')
        header = cursor.seek_absolute(header_start).read_bytes(SOUND_HEADER_SIZE + 1 + format_length)

        format_tag = int.from_bytes(header[SOUND_HEADER_SIZE + 1:SOUND_HEADER_SIZE + 3], 'little') \
            if format_length >= 2 else 0

        offset = cursor.tell()
        cursor.skip(data_length, f'payload of sound {name!r}')

        self._add(name, AudioBlob(offset, data_length, duration_ms, format_tag, header), parent)


class _WzFileParser:
    """
    Reads the directory hierarchy of a `PKG1` file. Images are only registered here, `parse_images` fills them in.
    """

    def __init__(self, tree: NodeTree, cursor: ByteCursor, base: int, hash_value: int, cancel=None):
        self.tree = tree
        self.cursor = cursor
        self.base = base
        self.hash_value = hash_value
        self.cancel = cancel
        self.images: list[int] = []
        self.tables: set[int] = set()

    def parse_directory(self, parent: int, depth: int = 0):
        cursor = self.cursor
        position = cursor.tell()
        if position in self.tables:
            raise ParseError(
                ParseErrorKind.MALFORMED_HEADER, f"directory table at {position} is reached twice", position=position
            )
        if depth >= MAX_NESTING:
            raise ParseError(
                ParseErrorKind.TRUNCATED_NODE, f"directories nested more than {MAX_NESTING} levels deep",
                position=position,
            )
        self.tables.add(position)

        count = cursor.read_compressed_int('directory entry count')
        if count < 0 or count > cursor.remaining():
            raise ParseError(ParseErrorKind.TRUNCATED_NODE, f"implausible directory entry count {count}", position=position)

        subdirectories = []
        for _ in range(count):
            _check_cancel(self.cancel)

            tag_position = cursor.tell()
            tag = cursor.read_u8('directory entry type')

            if tag == DIR_PADDING:
                cursor.skip(4 + 2, 'padding entry')
                cursor.read_offset(self.base, self.hash_value)
                continue

            if tag == DIR_NAME_REF:
                target = self.base + cursor.read_i32('directory name offset')
                if not 0 <= target < cursor.size():
                    raise ParseError(
                        ParseErrorKind.STRING_TABLE_INDEX_OUT_OF_RANGE,
                        f"directory entry name points to {target}, outside the file", position=tag_position,
                    )
                saved = cursor.tell()
                cursor.seek_absolute(target)
                tag = cursor.read_u8('directory entry type')
                name = cursor.read_prefixed_string('directory entry name')
                cursor.seek_absolute(saved)
            elif tag in (DIR_SUBDIRECTORY, DIR_IMAGE):
                name = cursor.read_prefixed_string('directory entry name')
            else:
                raise ParseError.unknown_tag(tag, tag_position, 'directory entry type')

            size = cursor.read_compressed_int('entry size')
            checksum = cursor.read_compressed_int('entry checksum')
            offset = cursor.read_offset(self.base, self.hash_value)

            if tag == DIR_SUBDIRECTORY:
                node = self.tree.add_node(name, Directory(), parent)
                if node is not None:
                    subdirectories.append((node.index, offset))
            elif tag == DIR_IMAGE:
                if size < 0 or offset + size > cursor.size():
                    raise ParseError(
                        ParseErrorKind.TRUNCATED_NODE, f"image {name!r} at {offset} ({size} bytes) exceeds the file",
                        position=tag_position,
                    )
                node = self.tree.add_node(name, Image(offset, size, checksum), parent)
                if node is not None:
                    self.images.append(node.index)
            else:
                raise ParseError.unknown_tag(tag, tag_position, 'directory entry type')

        for index, offset in subdirectories:
            if not 0 <= offset < cursor.size():
                raise ParseError(ParseErrorKind.TRUNCATED_NODE, f"directory offset {offset} is outside the file")
            cursor.seek_absolute(offset)
            self.parse_directory(index, depth + 1)

    def check_first_image(self):
        """
        Cheap plausibility test for a guessed version/key: the first image must start with a readable header.
        """
        if not self.images:
            return
        image = self.tree.node(self.images[0]).kind
        cursor = self.cursor.seek_absolute(image.offset)
        if cursor.read_u8('image header') != IMAGE_HEADER_TAG or cursor.read_prefixed_string() != IMAGE_HEADER_NAME:
            raise ParseError(ParseErrorKind.MALFORMED_HEADER, "first image header is unreadable", position=image.offset)

    def parse_images(self):
        for index in self.images:
            _check_cancel(self.cancel)
            image = self.tree.node(index).kind
            _ImageParser(self.tree, self.cursor, image.offset, image.offset + image.size, self.cancel).parse_image(index)


def guess_image_key(data: bytes, offset: int = 0) -> Optional[KeyStream]:
    """
    Finds the IV under which the image header at `offset` decodes to the expected marker string.
    """
    for region in GUESS_ORDER:
        key = KeyStream(KNOWN_IVS[region])
        cursor = ByteCursor(data, key)
        try:
            cursor.seek_absolute(offset)
            if cursor.read_u8() == IMAGE_HEADER_TAG and cursor.read_prefixed_string() == IMAGE_HEADER_NAME:
                logger.debug("Image key guessed as %s (%s)", region, key.iv.hex())
                return key
        except OutOfBounds:
            return None
    return None


def _parse_img(archive: Archive, key: Optional[KeyStream], cancel) -> NodeTree:
    if key is None:
        key = guess_image_key(archive.data)
        if key is None:
            raise ParseError(ParseErrorKind.MALFORMED_HEADER, "no known key decodes the image header", position=0)

    tree = NodeTree(archive, key)
    root = tree.add_node(archive.name, Image(0, len(archive.data)), None)
    _ImageParser(tree, tree.cursor(), 0, len(archive.data), cancel).parse_image(root.index)
    return tree


def _read_wz_header(data: bytes) -> tuple[int, int, bytes, int]:
    cursor = ByteCursor(data)
    if cursor.read_bytes(4, 'magic') != WZ_FILE_MAGIC:
        raise ParseError(ParseErrorKind.MALFORMED_HEADER, "missing PKG1 magic", position=0)
    declared_size = int.from_bytes(cursor.read_bytes(8, 'file size'), 'little')
    base = cursor.read_u32('data start')
    copyright_text = cursor.read_null_terminated_bytes('copyright')
    if base > len(data) or cursor.tell() > base:
        raise ParseError(ParseErrorKind.MALFORMED_HEADER, f"data start {base} is inconsistent with the header")
    encrypted = cursor.seek_absolute(base).read_u16('encrypted version')
    return declared_size, base, copyright_text, encrypted


def _parse_wz(
    archive: Archive, key: Optional[KeyStream], version: Optional[int], cancel, with_images: bool = True
) -> NodeTree:
    declared_size, base, copyright_text, encrypted = _read_wz_header(archive.data)
    logger.debug("PKG1 header: size=%d base=%d copyright=%r", declared_size, base, copyright_text)

    if version is not None:
        if encrypted_version(version_hash(version)) != encrypted:
            raise ParseError(ParseErrorKind.MALFORMED_HEADER, f"file is not version {version}", position=base)
        versions = [version]
    else:
        versions = [v for v in range(MAX_GUESSED_VERSION) if encrypted_version(version_hash(v)) == encrypted]

    keys = [key] if key is not None else [KeyStream(KNOWN_IVS[region]) for region in GUESS_ORDER]

    last_error = None
    for candidate_version in versions:
        for candidate_key in keys:
            _check_cancel(cancel)
            tree = NodeTree(
                Archive(archive.name, archive.data, candidate_version, declared_size, base), candidate_key
            )
            root = tree.add_node(archive.name, Directory(), None)
            parser = _WzFileParser(tree, tree.cursor(), base, version_hash(candidate_version), cancel)
            try:
                parser.cursor.seek_absolute(base + 2)
                parser.parse_directory(root.index)
                parser.check_first_image()
            except (ParseError, OutOfBounds) as e:
                last_error = e
                continue

            logger.debug("Archive version %d, key %s", candidate_version, candidate_key.iv.hex())
            if with_images:
                parser.parse_images()
            return tree

    if len(versions) == 1 and len(keys) == 1 and isinstance(last_error, ParseError):
        raise last_error
    raise ParseError(
        ParseErrorKind.MALFORMED_HEADER, f"no version/key combination reads the directory ({last_error})", position=base
    )


def parse(archive: Archive, key: Optional[KeyStream] = None, version: Optional[int] = None, cancel=None) -> NodeTree:
    """
    Parses a whole archive.

    Args:
        archive: The archive bytes and name. The name becomes the root node's name.
        key: The string key. If omitted, each known IV is tried.
        version: For `.wz` files, the format version. If omitted, it is guessed from the header.
        cancel: Optional object with an `is_set()` method (e.g. `threading.Event`), polled between nodes.

    Raises:
        ParseError: If the data is not a well-formed archive.
        Cancelled: If `cancel` was set before parsing finished.
    """
    try:
        if archive.data[:4] == WZ_FILE_MAGIC:
            tree = _parse_wz(archive, key, version, cancel)
        else:
            tree = _parse_img(archive, key, cancel)
    except OutOfBounds as e:
        raise ParseError(ParseErrorKind.TRUNCATED_NODE, str(e), position=e.position) from e

    logger.info("Parsed %s: %d nodes", archive.name, len(tree))
    return tree


def parse_bytes(
    data: bytes, name: str, key: Optional[KeyStream] = None, version: Optional[int] = None, cancel=None
) -> NodeTree:
    return parse(Archive(name, bytes(data)), key=key, version=version, cancel=cancel)


def load_file(path, key: Optional[KeyStream] = None, version: Optional[int] = None, cancel=None) -> NodeTree:
    path = pathlib.Path(path)
    return parse_bytes(path.read_bytes(), path.name, key=key, version=version, cancel=cancel)


def parse_directories(archive: Archive, key: Optional[KeyStream] = None, version: Optional[int] = None) -> NodeTree:
    """
    Reads only the directory hierarchy of a `PKG1` file: image nodes are present but have no children.
    """
    if archive.data[:4] != WZ_FILE_MAGIC:
        raise ParseError(ParseErrorKind.MALFORMED_HEADER, "missing PKG1 magic", position=0)
    try:
        return _parse_wz(archive, key, version, None, with_images=False)
    except OutOfBounds as e:
        raise ParseError(ParseErrorKind.TRUNCATED_NODE, str(e), position=e.position) from e
