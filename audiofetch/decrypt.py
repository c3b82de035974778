"""Transparent AES-128-CTR decryption of an audio byte stream."""

from __future__ import annotations

import io
from typing import BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AUDIO_AESIV = bytes(
    [
        0x72, 0xE0, 0x67, 0xFB, 0xDD, 0xCB, 0xCF, 0x77,
        0xEB, 0xE8, 0xBC, 0x64, 0x3F, 0x63, 0x0D, 0x93,
    ]
)

_BLOCK_SIZE = 16
_COUNTER_MODULUS = 1 << 128


class AudioDecrypt:
    """Wraps a readable (and optionally seekable) stream, decrypting as it reads."""

    def __init__(self, key: bytes, reader: BinaryIO) -> None:
        key = bytes(key)
        if len(key) != 16:
            raise ValueError(f"audio key must be 16 bytes, got {len(key)}")
        self._key = key
        self._reader = reader
        self._iv = int.from_bytes(AUDIO_AESIV, "big")
        self._cipher = self._cipher_at(0)

    def _cipher_at(self, position: int):
        block, skip = divmod(position, _BLOCK_SIZE)
        counter = (self._iv + block) % _COUNTER_MODULUS
        decryptor = Cipher(
            algorithms.AES(self._key), modes.CTR(counter.to_bytes(_BLOCK_SIZE, "big"))
        ).decryptor()
        if skip:
            decryptor.update(bytes(skip))
        return decryptor

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        return self._cipher.update(data)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        new_position = self._reader.seek(offset, whence)
        self._cipher = self._cipher_at(new_position)
        return new_position