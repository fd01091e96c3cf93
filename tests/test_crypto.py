"""
Unit tests for the key stream and the version hashing used by PKG1 headers.
"""

import pytest
from Crypto.Cipher import AES

from wzkit.crypto import AES_USER_KEY, KNOWN_IVS, KeyStream, encrypted_version, iv_for_region, rotl32, version_hash


def test_null_iv_gives_zero_key() -> None:
    key = KeyStream(bytes(4))

    assert key.is_null
    assert key.get(40) == bytes(40)
    assert key.xor(b'\x01\x02') == b'\x01\x02'


def test_key_blocks_chain_from_the_iv() -> None:
    """The first block encrypts the IV repeated four times; each next block encrypts the previous one."""
    iv = KNOWN_IVS['gms']
    cipher = AES.new(AES_USER_KEY, AES.MODE_ECB)
    first = cipher.encrypt(iv * 4)
    second = cipher.encrypt(first)

    key = KeyStream(iv)

    assert key.get(16) == first
    assert key.get(32) == first + second
    assert key.get(5) == first[:5]


def test_xor_is_an_involution(gms_key: KeyStream) -> None:
    data = bytes(range(50))

    assert gms_key.xor(gms_key.xor(data)) == data
    assert gms_key.xor(data) != data


def test_iv_must_be_four_bytes() -> None:
    with pytest.raises(ValueError):
        KeyStream(b'\x01\x02')


def test_region_lookup() -> None:
    assert iv_for_region('GMS') == KNOWN_IVS['gms']
    assert iv_for_region('ems') == iv_for_region('kms')
    with pytest.raises(ValueError):
        iv_for_region('xx')


def test_version_hash() -> None:
    # '8' -> 0x38 + 1, then 32 * 57 + 0x33 + 1
    assert version_hash(83) == 32 * 57 + 52
    assert encrypted_version(version_hash(83)) == 0xFF ^ ((32 * 57 + 52) >> 8) ^ ((32 * 57 + 52) & 0xFF)


def test_rotl32() -> None:
    assert rotl32(0x80000001, 1) == 0x00000003
    assert rotl32(0x12345678, 0) == 0x12345678
    assert rotl32(0x12345678, 32) == 0x12345678
