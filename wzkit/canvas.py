"""
Turning canvas payloads into RGBA8 rasters.

Decoding happens in two steps: the stored payload is inflated (it is a zlib stream, possibly split into key-masked
blocks), then the pixel data is expanded according to the canvas' format tag. Both steps are pure functions of the
payload bytes, so results can be cached per node and compared byte for byte.
"""

import logging
import threading
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import NamedTuple, Optional

import numpy as np
from PIL import Image

from wzkit.crypto import KeyStream
from wzkit.cursor import ByteCursor
from wzkit.errors import DecodeError, DecodeErrorKind, OutOfBounds
from wzkit.nodes import Canvas, Node, NodeTree


logger = logging.getLogger(__name__)

ZLIB_HEADERS = {b'\x78\x01', b'\x78\x5e', b'\x78\x9c', b'\x78\xda'}


@dataclass(frozen=True)
class DecodedImage:
    width: int
    height: int
    data: bytes = field(repr=False)

    @property
    def pixels(self) -> np.ndarray:
        return np.frombuffer(self.data, dtype=np.uint8).reshape((self.height, self.width, 4))

    def to_image(self) -> Image.Image:
        return Image.frombytes('RGBA', (self.width, self.height), self.data)

    def save(self, path):
        with self.to_image() as im:
            im.save(path)


def _blocks(size: int, block: int) -> int:
    return (size + block - 1) // block


def expand5(x):
    return (x << 3) | (x >> 2)


def expand6(x):
    return (x << 2) | (x >> 4)


def rgb565_to_rgb(values: np.ndarray) -> np.ndarray:
    values = values.astype(np.uint32)
    r = expand5((values >> 11) & 0x1F)
    g = expand6((values >> 5) & 0x3F)
    b = expand5(values & 0x1F)
    return np.stack([r, g, b], axis=-1)


def _rgba(r, g, b, a) -> np.ndarray:
    return np.stack([r, g, b, a], axis=-1).astype(np.uint8)


def decode_bgra4444(data: bytes, width: int, height: int) -> np.ndarray:
    raw = np.frombuffer(data, dtype=np.uint8).reshape((height, width, 2))
    gb, ar = raw[..., 0], raw[..., 1]
    # 4-bit channels are widened by repeating the nibble (0xA -> 0xAA)
    return _rgba((ar & 0x0F) * 17, (gb >> 4) * 17, (gb & 0x0F) * 17, (ar >> 4) * 17)


def decode_bgra8888(data: bytes, width: int, height: int) -> np.ndarray:
    raw = np.frombuffer(data, dtype=np.uint8).reshape((height, width, 4))
    return raw[..., [2, 1, 0, 3]].copy()


def decode_gray_alpha(data: bytes, width: int, height: int) -> np.ndarray:
    raw = np.frombuffer(data, dtype=np.uint8).reshape((height, width, 2))
    gray, alpha = raw[..., 0], raw[..., 1]
    return _rgba(gray, gray, gray, alpha)


def decode_argb1555(data: bytes, width: int, height: int) -> np.ndarray:
    values = np.frombuffer(data, dtype='<u2').reshape((height, width)).astype(np.uint32)
    r = expand5((values >> 10) & 0x1F)
    g = expand5((values >> 5) & 0x1F)
    b = expand5(values & 0x1F)
    a = np.where(values & 0x8000, 255, 0)
    return _rgba(r, g, b, a)


def decode_rgb565(data: bytes, width: int, height: int) -> np.ndarray:
    values = np.frombuffer(data, dtype='<u2').reshape((height, width))
    rgb = rgb565_to_rgb(values)
    return _rgba(rgb[..., 0], rgb[..., 1], rgb[..., 2], np.full((height, width), 255))


def decode_rgb565_block16(data: bytes, width: int, height: int) -> np.ndarray:
    bw, bh = _blocks(width, 16), _blocks(height, 16)
    values = np.frombuffer(data, dtype='<u2').reshape((bh, bw))
    rgb = rgb565_to_rgb(values)
    blocks = _rgba(rgb[..., 0], rgb[..., 1], rgb[..., 2], np.full((bh, bw), 255))
    return np.repeat(np.repeat(blocks, 16, axis=0), 16, axis=1)[:height, :width].copy()


def _dxt_colors(blocks: np.ndarray) -> np.ndarray:
    """
    Colours of every pixel of every block, from the 8-byte colour half of DXT3/DXT5 blocks. (n, 16, 3)
    """
    c0 = blocks[:, 0].astype(np.uint32) | (blocks[:, 1].astype(np.uint32) << 8)
    c1 = blocks[:, 2].astype(np.uint32) | (blocks[:, 3].astype(np.uint32) << 8)
    rgb0 = rgb565_to_rgb(c0).astype(np.int32)
    rgb1 = rgb565_to_rgb(c1).astype(np.int32)
    palette = np.stack([rgb0, rgb1, (2 * rgb0 + rgb1) // 3, (rgb0 + 2 * rgb1) // 3], axis=1)

    bits = blocks[:, 4:8].astype(np.uint32)
    indices = bits[:, 0] | (bits[:, 1] << 8) | (bits[:, 2] << 16) | (bits[:, 3] << 24)
    shifts = np.arange(16, dtype=np.uint32) * 2
    per_pixel = ((indices[:, None] >> shifts) & 0x3).astype(np.intp)

    return np.take_along_axis(palette, per_pixel[..., None], axis=1)


def _dxt3_alpha(blocks: np.ndarray) -> np.ndarray:
    nibbles = np.stack([blocks[:, :8] & 0x0F, blocks[:, :8] >> 4], axis=-1).reshape((-1, 16))
    return nibbles.astype(np.int32) * 17


def _dxt5_alpha(blocks: np.ndarray) -> np.ndarray:
    a0 = blocks[:, 0].astype(np.int32)
    a1 = blocks[:, 1].astype(np.int32)

    interpolated_8 = [((7 - k) * a0 + k * a1) // 7 for k in range(1, 7)]
    interpolated_6 = [((5 - k) * a0 + k * a1) // 5 for k in range(1, 5)] + [np.zeros_like(a0), np.full_like(a0, 255)]
    extra = np.where((a0 > a1)[None, :], np.stack(interpolated_8), np.stack(interpolated_6))
    palette = np.concatenate([a0[:, None], a1[:, None], extra.T], axis=1)

    bits = np.zeros(len(blocks), dtype=np.uint64)
    for i in range(6):
        bits |= blocks[:, 2 + i].astype(np.uint64) << np.uint64(8 * i)
    shifts = np.arange(16, dtype=np.uint64) * np.uint64(3)
    per_pixel = ((bits[:, None] >> shifts) & np.uint64(0x7)).astype(np.intp)

    return np.take_along_axis(palette, per_pixel, axis=1)


def _assemble_blocks(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Lays out (n, 16, 4) block pixels as a raster, dropping whatever overhangs the right and bottom edges.
    """
    bw, bh = _blocks(width, 4), _blocks(height, 4)
    raster = pixels.reshape((bh, bw, 4, 4, 4)).transpose((0, 2, 1, 3, 4)).reshape((bh * 4, bw * 4, 4))
    return raster[:height, :width].copy()


def decode_dxt3(data: bytes, width: int, height: int) -> np.ndarray:
    blocks = np.frombuffer(data, dtype=np.uint8).reshape((-1, 16))
    colors = _dxt_colors(blocks[:, 8:])
    alpha = _dxt3_alpha(blocks)
    pixels = np.concatenate([colors, alpha[..., None]], axis=-1).astype(np.uint8)
    return _assemble_blocks(pixels, width, height)


def decode_dxt5(data: bytes, width: int, height: int) -> np.ndarray:
    blocks = np.frombuffer(data, dtype=np.uint8).reshape((-1, 16))
    colors = _dxt_colors(blocks[:, 8:])
    alpha = _dxt5_alpha(blocks)
    pixels = np.concatenate([colors, alpha[..., None]], axis=-1).astype(np.uint8)
    return _assemble_blocks(pixels, width, height)


class PixelFormat(NamedTuple):
    tag: int
    name: str
    data_size: Callable[[int, int], int]
    expand: Callable[[bytes, int, int], np.ndarray]


PIXEL_FORMATS: dict[int, PixelFormat] = {
    fmt.tag: fmt for fmt in (
        PixelFormat(1, 'BGRA4444', lambda w, h: w * h * 2, decode_bgra4444),
        PixelFormat(2, 'BGRA8888', lambda w, h: w * h * 4, decode_bgra8888),
        PixelFormat(3, 'GrayAlpha', lambda w, h: w * h * 2, decode_gray_alpha),
        PixelFormat(257, 'ARGB1555', lambda w, h: w * h * 2, decode_argb1555),
        PixelFormat(513, 'RGB565', lambda w, h: w * h * 2, decode_rgb565),
        PixelFormat(517, 'RGB565Block16', lambda w, h: _blocks(w, 16) * _blocks(h, 16) * 2, decode_rgb565_block16),
        PixelFormat(1026, 'DXT3', lambda w, h: _blocks(w, 4) * _blocks(h, 4) * 16, decode_dxt3),
        PixelFormat(2050, 'DXT5', lambda w, h: _blocks(w, 4) * _blocks(h, 4) * 16, decode_dxt5),
    )
}


def pixel_format(tag: int) -> PixelFormat:
    try:
        return PIXEL_FORMATS[tag]
    except KeyError:
        raise DecodeError(DecodeErrorKind.UNSUPPORTED_FORMAT, f"unknown pixel format {tag}", format_tag=tag) from None


def unmask_blocks(payload: bytes, key: KeyStream) -> bytes:
    """
    Reassembles a payload stored as a list of (int32 length, masked bytes) blocks.
    """
    cursor = ByteCursor(payload)
    parts = []
    try:
        while cursor.remaining() > 0:
            length = cursor.read_i32('block length')
            if length <= 0:
                raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, f"invalid block length {length} at {cursor.tell() - 4}")
            parts.append(key.xor(cursor.read_bytes(length, 'masked block')))
    except OutOfBounds as e:
        raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, str(e)) from e
    return b''.join(parts)


def inflate(payload: bytes, key: KeyStream, limit: Optional[int] = None) -> bytes:
    """
    Inflates a canvas payload. With `limit`, inflation stops as soon as the output would exceed that many bytes.

    Raises:
        DecodeError: `CorruptStream` if the payload is not a valid stream, `SizeMismatch` if it inflates past `limit`.
    """
    if payload[:2] not in ZLIB_HEADERS:
        payload = unmask_blocks(payload, key)

    try:
        if limit is None:
            return zlib.decompressobj().decompress(payload)
        data = zlib.decompressobj().decompress(payload, limit + 1)
    except zlib.error as e:
        raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, f"payload does not inflate: {e}") from e

    if len(data) > limit:
        raise DecodeError(DecodeErrorKind.SIZE_MISMATCH, f"payload inflates to more than {limit} bytes")
    return data


def expand_pixels(data: bytes, width: int, height: int, format_tag: int) -> DecodedImage:
    """
    Converts already inflated pixel data in the given format to RGBA8.

    Raises:
        DecodeError: `UnsupportedFormat` for unknown tags, `SizeMismatch` if the data length does not match the
            dimensions.
    """
    fmt = pixel_format(format_tag)
    expected = fmt.data_size(width, height)
    if len(data) != expected:
        raise DecodeError(
            DecodeErrorKind.SIZE_MISMATCH,
            f"{fmt.name} {width}x{height} needs {expected} bytes, got {len(data)}", format_tag=format_tag,
        )

    raster = fmt.expand(data, width, height)
    assert raster.shape == (height, width, 4), raster.shape
    return DecodedImage(width, height, np.ascontiguousarray(raster, dtype=np.uint8).tobytes())


def decode_canvas(canvas: Canvas, payload: bytes, key: KeyStream) -> DecodedImage:
    # unknown formats are rejected before spending time on inflation
    fmt = pixel_format(canvas.format_tag)
    data = inflate(payload, key, limit=fmt.data_size(canvas.width, canvas.height))
    return expand_pixels(data, canvas.width, canvas.height, canvas.format_tag)


class CanvasDecoder:
    """
    Decodes the canvases of one tree, remembering each result by node index.

    Two threads decoding the same canvas at once both do the work; the first result stored wins and both get it.
    Nothing is ever stored half-done.
    """

    def __init__(self, tree: NodeTree):
        self.tree = tree
        self._cache: dict[int, DecodedImage] = {}
        self._lock = threading.Lock()

    def decode(self, node: Node) -> DecodedImage:
        if not isinstance(node.kind, Canvas):
            raise TypeError(f"{self.tree.path_of(node)} is a {node.type_name} node, not a canvas")

        with self._lock:
            cached = self._cache.get(node.index)
        if cached is not None:
            return cached

        canvas = node.kind
        logger.debug(
            "Decoding %s (%dx%d, format %d)", self.tree.path_of(node), canvas.width, canvas.height, canvas.format_tag
        )
        image = decode_canvas(canvas, self.tree.payload(node), self.tree.key)

        with self._lock:
            return self._cache.setdefault(node.index, image)

    def is_cached(self, node: Node) -> bool:
        with self._lock:
            return node.index in self._cache

    def clear(self):
        with self._lock:
            self._cache.clear()
