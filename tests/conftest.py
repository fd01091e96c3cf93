"""
Shared fixtures: keys and small archives built with the `wzwriter` encoder.
"""

import threading

import pytest

from wzkit.crypto import KNOWN_IVS, KeyStream
from wzkit.parser import parse_bytes
from wzwriter import ZERO_KEY, Link, bgra_canvas, build_img, build_wz

# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------
@pytest.fixture
def zero_key() -> KeyStream:
    return ZERO_KEY


@pytest.fixture
def gms_key() -> KeyStream:
    return KeyStream(KNOWN_IVS['gms'])


# -----------------------------------------------------------------------------
# Archives
# -----------------------------------------------------------------------------
@pytest.fixture
def mob_props() -> dict:
    """
    A mob image: a two-frame stand animation, a linked hit frame and some scalar info.
    """
    return {
        'info': {
            'maxHP': 1500,
            'speed': -20,
            'name': 'Snail',
            'bodyAttack': 1,
        },
        'stand': {
            '0': bgra_canvas(props={'origin': (2, 4), 'delay': 180}),
            '1': bgra_canvas(props={'origin': (2, 3)}),
        },
        'hit1': {
            '0': Link('../stand/0'),
        },
    }


@pytest.fixture
def mob_img(mob_props) -> bytes:
    return build_img(mob_props)


@pytest.fixture
def mob_tree(mob_img):
    return parse_bytes(mob_img, 'Mob.img')


@pytest.fixture
def map_wz(mob_props) -> bytes:
    return build_wz({
        'Mob': {
            '0100100.img': build_img(mob_props),
            '0100101.img': build_img({'info': {'level': 2}}),
        },
        'Back': {},
        'Smap.img': build_img({'Snail': 'Mob/0100100.img'}),
    })


@pytest.fixture
def cancel_event() -> threading.Event:
    return threading.Event()
