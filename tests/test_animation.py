"""
Tests for assembling numbered canvases into timed animation sequences.
"""

import pytest

from wzkit.animation import DEFAULT_DELAY, AnimationAssembler, frame_number
from wzkit.errors import Cancelled, NotAFrame
from wzkit.parser import parse_bytes
import wzwriter as w


def assembler_for(props, **kwargs):
    tree = parse_bytes(w.build_img(props), 'Anim.img')
    return tree, AnimationAssembler(tree, **kwargs)


# -----------------------------------------------------------------------------
# FRAME NAMES
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("name, expected", [
    ('0', 0), ('7', 7), ('10', 10), ('007', 7),
    ('x', None), ('', None), ('-1', None), ('+1', None), (' 1', None), ('1a', None), ('١', None),
])
def test_frame_number(name: str, expected) -> None:
    assert frame_number(name) == expected


# -----------------------------------------------------------------------------
# ORDERING
# -----------------------------------------------------------------------------

def test_two_frames_with_fallback_delay() -> None:
    """anim/0 has delay=100 and anim/1 has none: durations are [100, fallback]."""
    tree, assembler = assembler_for({
        'anim': {
            '0': w.bgra_canvas(props={'delay': 100}),
            '1': w.bgra_canvas(),
        },
    }, default_delay=120)

    sequence = assembler.assemble(tree.get('anim'))

    assert len(sequence) == 2
    assert sequence.durations == [100, 120]
    assert [frame.image.width for frame in sequence] == [4, 4]


def test_default_fallback_delay() -> None:
    tree, assembler = assembler_for({'anim': {'0': w.bgra_canvas(props={'delay': 100}), '1': w.bgra_canvas()}})

    assert assembler.assemble(tree.get('anim')).durations == [100, DEFAULT_DELAY]


def test_numeric_order_not_stored_order() -> None:
    """Children stored as 0, 2, 1, x, 10 come out as 0, 1, 2, 10; 'x' is not a frame at all."""
    tree, assembler = assembler_for({
        name: w.bgra_canvas(props={'delay': 10 + i}) for i, name in enumerate(['0', '2', '1', 'x', '10'])
    })

    sequence = assembler.assemble(tree.root)

    assert [frame.number for frame in sequence] == [0, 1, 2, 10]
    assert [frame.name for frame in sequence] == ['0', '1', '2', '10']
    assert sequence.durations == [10, 12, 11, 14]
    assert sequence.skipped == []


def test_empty_node_gives_empty_sequence() -> None:
    tree, assembler = assembler_for({'static': {}, 'named': {'a': w.bgra_canvas(), 'b': 1}})

    for path in ('static', 'named'):
        sequence = assembler.assemble(tree.get(path))
        assert len(sequence) == 0
        assert sequence.skipped == []
        assert sequence.frame_at(0) is None


# -----------------------------------------------------------------------------
# FRAME CONTENTS
# -----------------------------------------------------------------------------

def test_origin_and_defaults(mob_tree) -> None:
    sequence = AnimationAssembler(mob_tree).assemble(mob_tree.get('stand'))

    assert [frame.origin for frame in sequence] == [(2, 4), (2, 3)]
    assert sequence.durations == [180, DEFAULT_DELAY]


def test_missing_origin_defaults_to_zero() -> None:
    tree, assembler = assembler_for({'a': {'0': w.bgra_canvas()}})

    assert assembler.assemble(tree.get('a'))[0].origin == (0, 0)


def test_linked_frame_takes_metadata_from_target(mob_tree) -> None:
    sequence = AnimationAssembler(mob_tree).assemble(mob_tree.get('hit1'))

    assert len(sequence) == 1
    assert sequence[0].delay == 180
    assert sequence[0].origin == (2, 4)


@pytest.mark.parametrize("delay, expected", [(w.Short(250), 250), ('150', 150), (' 80 ', 80), (0, 0)])
def test_delay_value_kinds(delay, expected: int) -> None:
    tree, assembler = assembler_for({'a': {'0': w.bgra_canvas(props={'delay': delay})}})

    assert assembler.assemble(tree.get('a')).durations == [expected]


def test_frames_share_the_decoder_cache(mob_tree) -> None:
    assembler = AnimationAssembler(mob_tree)

    first = assembler.assemble(mob_tree.get('stand'))
    second = assembler.assemble(mob_tree.get('stand'))

    assert first[0].image is second[0].image
    assert assembler.decoder.is_cached(mob_tree.get('stand/0'))


# -----------------------------------------------------------------------------
# SKIPPED FRAMES
# -----------------------------------------------------------------------------

def test_bad_frames_are_skipped_and_reported() -> None:
    tree, assembler = assembler_for({
        'a': {
            '0': w.bgra_canvas(),
            '1': 5,
            '2': w.Link('missing'),
            '3': w.bgra_canvas(props={'delay': 'soon'}),
            '4': w.bgra_canvas(props={'origin': 3}),
            '5': w.Canvas(4, 4, 999, bytes(8)),
            '6': w.bgra_canvas(props={'delay': (1, 2)}),
            '7': w.bgra_canvas(),
        },
    })

    sequence = assembler.assemble(tree.get('a'))

    assert [frame.number for frame in sequence] == [0, 7]
    assert [skipped.name for skipped in sequence.skipped] == ['1', '2', '3', '4', '5', '6']
    assert all(isinstance(skipped, NotAFrame) for skipped in sequence.skipped)


def test_cancelled_between_frames(mob_tree, cancel_event) -> None:
    cancel_event.set()

    with pytest.raises(Cancelled):
        AnimationAssembler(mob_tree).assemble(mob_tree.get('stand'), cancel=cancel_event)


# -----------------------------------------------------------------------------
# PLAYBACK
# -----------------------------------------------------------------------------

def test_frame_at() -> None:
    tree, assembler = assembler_for({
        'a': {'0': w.bgra_canvas(props={'delay': 100}), '1': w.bgra_canvas(props={'delay': 50})},
    })
    sequence = assembler.assemble(tree.get('a'))

    assert sequence.total_duration == 150
    assert sequence.frame_at(0).number == 0
    assert sequence.frame_at(99).number == 0
    assert sequence.frame_at(100).number == 1
    assert sequence.frame_at(149).number == 1
    assert sequence.frame_at(150).number == 0
    assert sequence.frame_at(1000, loop=False).number == 1
