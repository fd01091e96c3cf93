import threading

from Crypto.Cipher import AES


AES_USER_KEY = b''.join(
    dword.to_bytes(4, 'little') for dword in (0x13, 0x08, 0x06, 0xB4, 0x1B, 0x0F, 0x33, 0x52)
)

KNOWN_IVS = {
    'gms': bytes([0x4D, 0x23, 0xC7, 0x2B]),
    'kms': bytes([0xB9, 0x7D, 0x63, 0xE9]),
    'ems': bytes([0xB9, 0x7D, 0x63, 0xE9]),
    'bms': bytes(4),
}

# order in which IVs are tried when the region is not known
GUESS_ORDER = ('gms', 'kms', 'bms')

OFFSET_CONSTANT = 0x581C3F6D


class KeyStream:
    """
    The XOR key applied to strings and list-stored canvas payloads.

    The key is produced 16 bytes at a time by chaining AES encryptions of the IV, and only as far as it has been
    asked for. An all-zero IV gives an all-zero key.
    """

    def __init__(self, iv: bytes):
        if len(iv) != 4:
            raise ValueError(f"IV must be 4 bytes long (is: {len(iv)})")

        self.iv = bytes(iv)
        self._key = bytearray()
        self._lock = threading.Lock()
        self._cipher = None if self.is_null else AES.new(AES_USER_KEY, AES.MODE_ECB)

    @property
    def is_null(self) -> bool:
        return not any(self.iv)

    def get(self, length: int) -> bytes:
        if self.is_null:
            return bytes(length)

        with self._lock:
            if len(self._key) < length:
                self._extend(length)
            return bytes(self._key[:length])

    def _extend(self, length: int):
        block = bytes(self._key[-16:]) if self._key else self.iv * 4
        while len(self._key) < length:
            block = self._cipher.encrypt(block)
            self._key += block

    def xor(self, data: bytes) -> bytes:
        if self.is_null:
            return bytes(data)
        key = self.get(len(data))
        mixed = int.from_bytes(data, 'little') ^ int.from_bytes(key, 'little')
        return mixed.to_bytes(len(data), 'little')

    def __repr__(self):
        return f'KeyStream({self.iv.hex()})'


def iv_for_region(region: str) -> bytes:
    try:
        return KNOWN_IVS[region.lower()]
    except KeyError:
        raise ValueError(f"Unknown region {region!r}, expected one of {sorted(KNOWN_IVS)}") from None


def version_hash(version: int) -> int:
    h = 0
    for c in str(version):
        h = ((h << 5) + ord(c) + 1) & 0xFFFFFFFF
    return h


def encrypted_version(version_hash_value: int) -> int:
    h = version_hash_value
    return 0xFF ^ ((h >> 24) & 0xFF) ^ ((h >> 16) & 0xFF) ^ ((h >> 8) & 0xFF) ^ (h & 0xFF)


def rotl32(value: int, shift: int) -> int:
    shift &= 0x1F
    value &= 0xFFFFFFFF
    return ((value << shift) | (value >> (32 - shift))) & 0xFFFFFFFF
