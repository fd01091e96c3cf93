"""
Tests for canvas decoding: every pixel format against hand-computed RGBA8 references, payload unmasking and the
per-node cache.
"""

import struct
import tracemalloc
import zlib
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image

from wzkit.canvas import CanvasDecoder, DecodedImage, expand_pixels, inflate
from wzkit.errors import DecodeError, DecodeErrorKind
from wzkit.parser import parse_bytes
import wzwriter as w

RED, GREEN, BLUE = (255, 0, 0), (0, 255, 0), (0, 0, 255)


def rgba(*pixels) -> bytes:
    return bytes(channel for pixel in pixels for channel in pixel)


def dxt_color_block(c0: int, c1: int, row_indices: bytes) -> bytes:
    return struct.pack('<HH', c0, c1) + row_indices


def dxt5_alpha_block(a0: int, a1: int, indices: list) -> bytes:
    bits = sum(index << (3 * i) for i, index in enumerate(indices))
    return bytes([a0, a1]) + bits.to_bytes(6, 'little')


# -----------------------------------------------------------------------------
# REFERENCE FIXTURES
# -----------------------------------------------------------------------------

# red to blue: rows use palette entries 0, 1, 2 and 3
DXT_ROWS = dxt_color_block(0xF800, 0x001F, bytes([0x00, 0x55, 0xAA, 0xFF]))
DXT_ROW_COLORS = [RED, BLUE, (170, 0, 85), (85, 0, 170)]

# even pixels transparent, odd pixels opaque
DXT3_ALPHA = bytes([0xF0] * 8)
DXT3_REFERENCE = rgba(*(
    (*DXT_ROW_COLORS[row], 0 if col % 2 == 0 else 255) for row in range(4) for col in range(4)
))

EIGHT_ALPHA = [255, 0, 218, 182, 145, 109, 72, 36]
SIX_ALPHA = [0, 255, 51, 102, 153, 204, 0, 255]
PIXEL_INDICES = [i % 8 for i in range(16)]

FORMAT_FIXTURES = {
    'bgra4444': (1, 2, 1, b'\x21\x43\xf0\x0a', rgba((0x33, 0x22, 0x11, 0x44), (0xAA, 0xFF, 0x00, 0x00))),
    'bgra8888': (2, 1, 2, b'\x01\x02\x03\x04\x10\x20\x30\x40', rgba((3, 2, 1, 4), (0x30, 0x20, 0x10, 0x40))),
    'gray_alpha': (3, 2, 1, b'\x80\xff\x10\x00', rgba((0x80, 0x80, 0x80, 0xFF), (0x10, 0x10, 0x10, 0x00))),
    'argb1555': (
        257, 3, 1, struct.pack('<3H', 0xFC00, 0x03E0, 0x8421),
        rgba((255, 0, 0, 255), (0, 255, 0, 0), (8, 8, 8, 255)),
    ),
    'rgb565': (
        513, 2, 2, struct.pack('<4H', 0xF800, 0x07E0, 0x001F, 0x8410),
        rgba((*RED, 255), (*GREEN, 255), (*BLUE, 255), (132, 130, 132, 255)),
    ),
    'rgb565_block16': (
        517, 17, 2, struct.pack('<2H', 0xF800, 0x001F),
        rgba(*(([(*RED, 255)] * 16 + [(*BLUE, 255)]) * 2)),
    ),
    'dxt3': (1026, 4, 4, DXT3_ALPHA + DXT_ROWS, DXT3_REFERENCE),
    'dxt5_eight_alpha': (
        2050, 4, 4, dxt5_alpha_block(255, 0, PIXEL_INDICES) + dxt_color_block(0x07E0, 0x07E0, bytes(4)),
        rgba(*((*GREEN, EIGHT_ALPHA[i % 8]) for i in range(16))),
    ),
    'dxt5_six_alpha': (
        2050, 4, 4, dxt5_alpha_block(0, 255, PIXEL_INDICES) + dxt_color_block(0x07E0, 0x07E0, bytes(4)),
        rgba(*((*GREEN, SIX_ALPHA[i % 8]) for i in range(16))),
    ),
}


# -----------------------------------------------------------------------------
# PIXEL FORMATS
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("fixture", FORMAT_FIXTURES.values(), ids=list(FORMAT_FIXTURES))
def test_format_matches_reference(fixture) -> None:
    tag, width, height, raw, expected = fixture

    image = expand_pixels(raw, width, height, tag)

    assert (image.width, image.height) == (width, height)
    assert len(image.data) == 4 * width * height
    assert image.data == expected


@pytest.mark.parametrize("fixture", FORMAT_FIXTURES.values(), ids=list(FORMAT_FIXTURES))
def test_stored_canvas_matches_reference(fixture) -> None:
    """The same fixtures, stored compressed in an image and decoded through the tree."""
    tag, width, height, raw, expected = fixture
    scale = 4 if tag == 517 else 0
    tree = parse_bytes(w.build_img({'c': w.Canvas(width, height, tag, raw, scale=scale)}), 'C.img')

    node = tree.get('c')
    assert node.kind.format_tag == tag
    assert CanvasDecoder(tree).decode(node).data == expected


def test_block_formats_clip_partial_edge_blocks() -> None:
    """A 5x3 DXT3 canvas keeps the first column of the second block and the first three rows of both."""
    opaque_red = bytes([0xFF] * 8) + dxt_color_block(0xF800, 0xF800, bytes(4))

    image = expand_pixels(DXT3_ALPHA + DXT_ROWS + opaque_red, 5, 3, 1026)

    expected = rgba(*(
        (*DXT_ROW_COLORS[row], 0 if col % 2 == 0 else 255) if col < 4 else (*RED, 255)
        for row in range(3) for col in range(5)
    ))
    assert image.data == expected


def test_unsupported_format() -> None:
    tree = parse_bytes(w.build_img({'c': w.Canvas(2, 2, 999, bytes(16))}), 'C.img')

    with pytest.raises(DecodeError) as excinfo:
        CanvasDecoder(tree).decode(tree.get('c'))

    assert excinfo.value.kind == DecodeErrorKind.UNSUPPORTED_FORMAT
    assert excinfo.value.format_tag == 999


@pytest.mark.parametrize("size", [60, 68, 0])
def test_size_mismatch(size: int) -> None:
    tree = parse_bytes(w.build_img({'c': w.Canvas(4, 4, 2, bytes(size))}), 'C.img')

    with pytest.raises(DecodeError) as excinfo:
        CanvasDecoder(tree).decode(tree.get('c'))

    assert excinfo.value.kind == DecodeErrorKind.SIZE_MISMATCH


def test_oversized_payload_stops_inflating(zero_key) -> None:
    """A payload inflating far past the canvas size is cut off after one byte too many."""
    payload = zlib.compress(bytes(1 << 24))
    tree = parse_bytes(w.build_img({'c': w.Canvas(1, 1, 2, b'', payload=payload)}), 'C.img')

    tracemalloc.start()
    try:
        with pytest.raises(DecodeError) as excinfo:
            CanvasDecoder(tree).decode(tree.get('c'))
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert excinfo.value.kind == DecodeErrorKind.SIZE_MISMATCH
    assert peak < 1 << 20

    with pytest.raises(DecodeError) as excinfo:
        inflate(payload, zero_key, limit=4)
    assert excinfo.value.kind == DecodeErrorKind.SIZE_MISMATCH
    assert inflate(zlib.compress(bytes(4)), zero_key, limit=4) == bytes(4)


def test_corrupt_stream() -> None:
    tree = parse_bytes(w.build_img({'c': w.Canvas(4, 4, 2, b'', payload=b'\x78\x9c\xff\xff\xff\xff')}), 'C.img')

    with pytest.raises(DecodeError) as excinfo:
        CanvasDecoder(tree).decode(tree.get('c'))

    assert excinfo.value.kind == DecodeErrorKind.CORRUPT_STREAM


def test_broken_decode_does_not_affect_siblings() -> None:
    tree = parse_bytes(w.build_img({'bad': w.Canvas(4, 4, 777, bytes(4)), 'good': w.bgra_canvas()}), 'C.img')
    decoder = CanvasDecoder(tree)

    with pytest.raises(DecodeError):
        decoder.decode(tree.get('bad'))

    assert decoder.decode(tree.get('good')).data == expand_pixels(w.BGRA_4X4, 4, 4, 2).data
    assert not decoder.is_cached(tree.get('bad'))


# -----------------------------------------------------------------------------
# PAYLOADS
# -----------------------------------------------------------------------------

def test_masked_block_payload(gms_key) -> None:
    """Payloads stored as key-masked blocks decode like plain zlib streams."""
    props = {'c': w.bgra_canvas(masked=True, chunk_size=16)}
    tree = parse_bytes(w.build_img(props, key=gms_key), 'C.img')

    image = CanvasDecoder(tree).decode(tree.get('c'))

    assert image.data == expand_pixels(w.BGRA_4X4, 4, 4, 2).data


def test_inflate_rejects_bad_block_length(zero_key) -> None:
    with pytest.raises(DecodeError) as excinfo:
        inflate(struct.pack('<i', -4) + bytes(8), zero_key)

    assert excinfo.value.kind == DecodeErrorKind.CORRUPT_STREAM


# -----------------------------------------------------------------------------
# CACHE
# -----------------------------------------------------------------------------

def test_decode_is_idempotent_and_cached(mob_tree) -> None:
    decoder = CanvasDecoder(mob_tree)
    node = mob_tree.get('stand/0')

    first = decoder.decode(node)
    assert decoder.is_cached(node)
    second = decoder.decode(node)

    assert second is first
    decoder.clear()
    assert not decoder.is_cached(node)
    assert decoder.decode(node).data == first.data


def test_concurrent_decodes_agree(mob_tree) -> None:
    decoder = CanvasDecoder(mob_tree)
    nodes = [mob_tree.get('stand/0'), mob_tree.get('stand/1')] * 8

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(decoder.decode, nodes))

    assert len({r.data for r in results}) == 1
    assert results[0] is decoder.decode(nodes[0])


def test_decode_rejects_non_canvas(mob_tree) -> None:
    with pytest.raises(TypeError):
        CanvasDecoder(mob_tree).decode(mob_tree.get('info'))


# -----------------------------------------------------------------------------
# IMAGES
# -----------------------------------------------------------------------------

def test_decoded_image_exports(tmp_path) -> None:
    image = expand_pixels(b'\x01\x02\x03\x04' * 2, 2, 1, 2)
    assert isinstance(image, DecodedImage)
    assert image.pixels.shape == (1, 2, 4)
    assert tuple(image.pixels[0, 0]) == (3, 2, 1, 4)

    with image.to_image() as im:
        assert im.mode == 'RGBA'
        assert im.size == (2, 1)
        assert im.getpixel((1, 0)) == (3, 2, 1, 4)

    path = tmp_path / 'frame.png'
    image.save(path)
    with Image.open(path) as im:
        assert im.convert('RGBA').tobytes() == image.data
