"""
A bounds-checked reader over an in-memory archive, which knows the primitive encodings used throughout WZ files.
"""

import struct
from typing import Optional

from wzkit.crypto import KeyStream, OFFSET_CONSTANT, rotl32
from wzkit.errors import OutOfBounds


INT8 = struct.Struct('<b')
UINT16LE = struct.Struct('<H')
INT16LE = struct.Struct('<h')
UINT32LE = struct.Struct('<I')
INT32LE = struct.Struct('<i')
INT64LE = struct.Struct('<q')
FLOAT32LE = struct.Struct('<f')
FLOAT64LE = struct.Struct('<d')

COMPRESSED_INT_SENTINEL = -128
WIDE_STRING_SENTINEL = 127


class ByteCursor:
    """
    Sequential and random-access reader over a fixed range of a shared byte buffer.

    The buffer is never copied: the cursor holds a `memoryview` and reads slices out of it on demand. Every read
    checks that enough bytes remain and raises `OutOfBounds` otherwise, leaving the position where it was.
    """

    def __init__(self, data, key: Optional[KeyStream] = None, start: int = 0, end: Optional[int] = None):
        self._view = data if isinstance(data, memoryview) else memoryview(data)
        self._start = start
        self._end = len(self._view) if end is None else end
        if not 0 <= self._start <= self._end <= len(self._view):
            raise ValueError(f"Invalid cursor range {self._start}..{self._end} for {len(self._view)} bytes")
        self._pos = self._start
        self.key = key or KeyStream(bytes(4))

    def tell(self) -> int:
        return self._pos

    def seek_absolute(self, position: int) -> 'ByteCursor':
        if not self._start <= position <= self._end:
            raise OutOfBounds(position, 0, self._end - self._start, 'seek target')
        self._pos = position
        return self

    def skip(self, n_bytes: int, meaning: Optional[str] = None) -> 'ByteCursor':
        self._require(n_bytes, meaning)
        self._pos += n_bytes
        return self

    def remaining(self) -> int:
        return self._end - self._pos

    def size(self) -> int:
        return self._end - self._start

    def view(self, start: int, end: int) -> 'ByteCursor':
        """
        A new cursor over a sub-range of the same buffer, sharing this cursor's key.
        """
        if not self._start <= start <= end <= self._end:
            raise OutOfBounds(start, end - start, max(self._end - start, 0), 'sub-range')
        return ByteCursor(self._view, self.key, start, end)

    def _require(self, n_bytes: int, meaning: Optional[str]):
        if n_bytes < 0:
            raise ValueError("The number of bytes to read cannot be negative")
        if n_bytes > self._end - self._pos:
            raise OutOfBounds(self._pos, n_bytes, self._end - self._pos, meaning)

    def read_bytes(self, n_bytes: int, meaning: Optional[str] = None) -> bytes:
        self._require(n_bytes, meaning)
        data = self._view[self._pos:self._pos + n_bytes].tobytes()
        self._pos += n_bytes
        return data

    def peek_bytes(self, n_bytes: int) -> bytes:
        n_bytes = min(n_bytes, self.remaining())
        return self._view[self._pos:self._pos + n_bytes].tobytes()

    def _read_struct(self, fmt: struct.Struct, meaning: Optional[str]):
        self._require(fmt.size, meaning)
        value = fmt.unpack_from(self._view, self._pos)[0]
        self._pos += fmt.size
        return value

    def read_u8(self, meaning: Optional[str] = None) -> int:
        self._require(1, meaning)
        value = self._view[self._pos]
        self._pos += 1
        return value

    def read_i8(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(INT8, meaning)

    def read_u16(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(UINT16LE, meaning)

    def read_i16(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(INT16LE, meaning)

    def read_u32(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(UINT32LE, meaning)

    def read_i32(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(INT32LE, meaning)

    def read_i64(self, meaning: Optional[str] = None) -> int:
        return self._read_struct(INT64LE, meaning)

    def read_f32(self, meaning: Optional[str] = None) -> float:
        return self._read_struct(FLOAT32LE, meaning)

    def read_f64(self, meaning: Optional[str] = None) -> float:
        return self._read_struct(FLOAT64LE, meaning)

    def read_null_terminated_bytes(self, meaning: Optional[str] = None) -> bytes:
        end = self._pos
        while end < self._end and self._view[end] != 0:
            end += 1
        if end == self._end:
            raise OutOfBounds(self._pos, end - self._pos + 1, end - self._pos, meaning or 'null-terminated string')
        data = self._view[self._pos:end].tobytes()
        self._pos = end + 1
        return data

    def read_compressed_int(self, meaning: Optional[str] = None) -> int:
        """
        A single signed byte holds the value itself, unless it is -128, in which case a 32-bit int follows.
        """
        start = self._pos
        small = self.read_i8(meaning)
        if small != COMPRESSED_INT_SENTINEL:
            return small
        try:
            return self.read_i32(meaning)
        except OutOfBounds:
            self._pos = start
            raise

    def read_compressed_long(self, meaning: Optional[str] = None) -> int:
        start = self._pos
        small = self.read_i8(meaning)
        if small != COMPRESSED_INT_SENTINEL:
            return small
        try:
            return self.read_i64(meaning)
        except OutOfBounds:
            self._pos = start
            raise

    def read_prefixed_string(self, meaning: Optional[str] = None) -> str:
        start = self._pos
        try:
            return self._read_prefixed_string(meaning)
        except OutOfBounds:
            self._pos = start
            raise

    def _read_prefixed_string(self, meaning: Optional[str]) -> str:
        small = self.read_i8(meaning)
        if small == 0:
            return ''

        if small > 0:
            length = self.read_i32(meaning) if small == WIDE_STRING_SENTINEL else small
            if length < 0:
                raise OutOfBounds(self._pos, length, self.remaining(), meaning)
            raw = self.read_bytes(length * 2, meaning)
            key = self.key.get(length * 2)
            chars = []
            mask = 0xAAAA
            for i in range(length):
                value = raw[2 * i] | (raw[2 * i + 1] << 8)
                value ^= mask ^ (key[2 * i] | (key[2 * i + 1] << 8))
                chars.append(value)
                mask = (mask + 1) & 0xFFFF
            return b''.join(UINT16LE.pack(c) for c in chars).decode('utf-16-le', errors='replace')

        length = self.read_i32(meaning) if small == COMPRESSED_INT_SENTINEL else -small
        if length < 0:
            raise OutOfBounds(self._pos, length, self.remaining(), meaning)
        raw = self.read_bytes(length, meaning)
        key = self.key.get(length)
        out = bytearray(length)
        mask = 0xAA
        for i in range(length):
            out[i] = raw[i] ^ mask ^ key[i]
            mask = (mask + 1) & 0xFF
        return out.decode('latin-1')

    def read_offset(self, base: int, hash_value: int, meaning: Optional[str] = None) -> int:
        """
        Decodes the obfuscated absolute offsets found in `.wz` directory entries.

        Args:
            base: Position of the first data byte after the file header (the base for relative addressing).
            hash_value: The hash of the archive's format version.
        """
        offset = ((self._pos - base) ^ 0xFFFFFFFF) & 0xFFFFFFFF
        offset = (offset * hash_value) & 0xFFFFFFFF
        offset = (offset - OFFSET_CONSTANT) & 0xFFFFFFFF
        offset = rotl32(offset, offset & 0x1F)
        offset ^= self.read_u32(meaning or 'offset')
        return (offset + base * 2) & 0xFFFFFFFF
