"""Stream ciphers: a random nonce followed by the encrypted payload."""

from __future__ import annotations

import hashlib
import logging
import os
from enum import IntEnum
from typing import Callable

from Crypto.Cipher import AES, ARC4, Blowfish, ChaCha20, Salsa20
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

__all__ = [
    "CryptoError",
    "NeedMoreData",
    "StreamMethod",
    "NonceFilter",
    "stream_init",
    "StreamCipher",
    "StreamEncryptor",
    "StreamDecryptor",
]

log = logging.getLogger(__name__)


class CryptoError(Exception):
    """Encryption or decryption failed, or the cipher cannot be set up."""


class NeedMoreData(Exception):
    """The decryptor needs more bytes before it can produce plaintext."""


class StreamMethod(IntEnum):
    """The stream cipher methods, in their wire-protocol order."""

    TABLE = 0
    RC4 = 1
    RC4_MD5 = 2
    AES_128_CFB = 3
    AES_192_CFB = 4
    AES_256_CFB = 5
    AES_128_CTR = 6
    AES_192_CTR = 7
    AES_256_CTR = 8
    BF_CFB = 9
    CAMELLIA_128_CFB = 10
    CAMELLIA_192_CFB = 11
    CAMELLIA_256_CFB = 12
    CAST5_CFB = 13
    DES_CFB = 14
    IDEA_CFB = 15
    RC2_CFB = 16
    SEED_CFB = 17
    SALSA20 = 18
    CHACHA20 = 19
    CHACHA20_IETF = 20

    @property
    def cipher_name(self) -> str:
        """The name by which the method is configured."""
        return self.name.lower().replace("_", "-")

    @property
    def key_size(self) -> int:
        """Key length in bytes."""
        return _KEY_SIZES[self.value]

    @property
    def nonce_size(self) -> int:
        """Nonce length in bytes, as sent at the start of a stream."""
        return _NONCE_SIZES[self.value]

    @classmethod
    def from_name(cls, name: str) -> StreamMethod:
        """Look up a method by its configured name; raise KeyError if unknown."""
        for method in cls:
            if method.cipher_name == name:
                return method
        raise KeyError(name)


_NONCE_SIZES = (0, 0, 16, 16, 16, 16, 16, 16, 16, 8, 16, 16, 16, 8, 8, 8, 8, 16, 8, 8, 12)
_KEY_SIZES = (0, 16, 16, 16, 24, 32, 16, 24, 32, 16, 16, 24, 32, 16, 8, 16, 16, 16, 32, 32, 32)

_UNSUPPORTED = frozenset({
    StreamMethod.CAST5_CFB,
    StreamMethod.DES_CFB,
    StreamMethod.IDEA_CFB,
    StreamMethod.RC2_CFB,
    StreamMethod.SEED_CFB,
})

_Transform = Callable[[bytes], bytes]
_Factory = Callable[[bytes, bytes, bool], _Transform]


def _aes_cfb(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    cipher = AES.new(key, AES.MODE_CFB, iv=nonce, segment_size=128)
    return cipher.encrypt if encrypt else cipher.decrypt


def _aes_ctr(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    cipher = AES.new(key, AES.MODE_CTR, nonce=b"", initial_value=nonce)
    return cipher.encrypt if encrypt else cipher.decrypt


def _blowfish_cfb(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    cipher = Blowfish.new(key, Blowfish.MODE_CFB, iv=nonce, segment_size=64)
    return cipher.encrypt if encrypt else cipher.decrypt


def _camellia_cfb(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    cipher = Cipher(algorithms.Camellia(key), modes.CFB(nonce))
    context = cipher.encryptor() if encrypt else cipher.decryptor()
    return context.update


def _rc4(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    return ARC4.new(key).encrypt


def _rc4_md5(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    true_key = hashlib.md5(key[:16] + nonce[:16]).digest()
    return ARC4.new(true_key).encrypt


def _salsa20(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    return Salsa20.new(key=key, nonce=nonce).encrypt


def _chacha20(key: bytes, nonce: bytes, encrypt: bool) -> _Transform:
    return ChaCha20.new(key=key, nonce=nonce).encrypt


_FACTORIES: dict[StreamMethod, _Factory] = {
    StreamMethod.RC4: _rc4,
    StreamMethod.RC4_MD5: _rc4_md5,
    StreamMethod.AES_128_CFB: _aes_cfb,
    StreamMethod.AES_192_CFB: _aes_cfb,
    StreamMethod.AES_256_CFB: _aes_cfb,
    StreamMethod.AES_128_CTR: _aes_ctr,
    StreamMethod.AES_192_CTR: _aes_ctr,
    StreamMethod.AES_256_CTR: _aes_ctr,
    StreamMethod.BF_CFB: _blowfish_cfb,
    StreamMethod.CAMELLIA_128_CFB: _camellia_cfb,
    StreamMethod.CAMELLIA_192_CFB: _camellia_cfb,
    StreamMethod.CAMELLIA_256_CFB: _camellia_cfb,
    StreamMethod.SALSA20: _salsa20,
    StreamMethod.CHACHA20: _chacha20,
    StreamMethod.CHACHA20_IETF: _chacha20,
}


class NonceFilter:
    """Remembers recently seen nonces in two alternating generations.

    When the current generation is full the older one is cleared and
    reused, so memory stays bounded while recent nonces are kept.
    """

    def __init__(self, capacity: int = 1_000_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._generations: tuple[set[bytes], set[bytes]] = (set(), set())
        self._current = 0

    def check(self, nonce: bytes) -> bool:
        """Whether ``nonce`` has been seen recently."""
        key = bytes(nonce)
        return any(key in generation for generation in self._generations)

    def add(self, nonce: bytes) -> None:
        """Record ``nonce`` as seen."""
        generation = self._generations[self._current]
        if len(generation) >= self._capacity:
            self._current ^= 1
            generation = self._generations[self._current]
            generation.clear()
        generation.add(bytes(nonce))


class StreamCipher:
    """A configured stream cipher: method, key and a shared nonce filter."""

    def __init__(self, method: StreamMethod, key: bytes,
                 nonce_filter: NonceFilter | None = None) -> None:
        method = StreamMethod(method)
        if method is StreamMethod.TABLE:
            raise CryptoError("Table is deprecated")
        if method in _UNSUPPORTED:
            raise CryptoError(
                f"Cipher {method.cipher_name} currently is not supported")
        key = bytes(key)
        if len(key) != method.key_size:
            raise CryptoError(
                f"{method.cipher_name} needs a {method.key_size}-byte key, "
                f"got {len(key)} bytes")
        self.method = method
        self.key = key
        self.nonce_filter = nonce_filter if nonce_filter is not None else NonceFilter()
        self._factory = _FACTORIES[method]

    @property
    def nonce_size(self) -> int:
        """Nonce length in bytes."""
        return self.method.nonce_size

    def _transform(self, nonce: bytes, encrypt: bool) -> _Transform:
        try:
            return self._factory(self.key, nonce, encrypt)
        except (ValueError, TypeError) as exc:
            raise CryptoError(f"cannot initialise {self.method.cipher_name}: {exc}") from exc

    def _remember(self, nonce: bytes) -> None:
        if nonce:
            self.nonce_filter.add(nonce)

    def encrypt_all(self, plaintext: bytes) -> bytes:
        """Encrypt a whole packet under a fresh nonce: ``nonce + ciphertext``."""
        nonce = os.urandom(self.nonce_size)
        process = self._transform(nonce, True)
        self._remember(nonce)
        return nonce + process(bytes(plaintext))

    def decrypt_all(self, ciphertext: bytes) -> bytes:
        """Decrypt a whole packet produced by :meth:`encrypt_all`."""
        ciphertext = bytes(ciphertext)
        size = self.nonce_size
        if len(ciphertext) <= size:
            raise CryptoError("packet too short")
        nonce = ciphertext[:size]
        if nonce and self.nonce_filter.check(nonce):
            log.error("crypto: stream: repeat IV detected")
            raise CryptoError("repeat IV detected")
        plaintext = self._transform(nonce, False)(ciphertext[size:])
        self._remember(nonce)
        return plaintext

    def encryptor(self) -> StreamEncryptor:
        """A new encrypting stream with its own nonce."""
        return StreamEncryptor(self)

    def decryptor(self) -> StreamDecryptor:
        """A new decrypting stream that reads its nonce from the data."""
        return StreamDecryptor(self)


class StreamEncryptor:
    """Encrypts one direction of a connection; the nonce leads the output."""

    def __init__(self, cipher: StreamCipher) -> None:
        self._cipher = cipher
        self._process: _Transform | None = None

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt the next chunk; the first call's output starts with the nonce."""
        prefix = b""
        if self._process is None:
            nonce = os.urandom(self._cipher.nonce_size)
            self._process = self._cipher._transform(nonce, True)
            self._cipher._remember(nonce)
            prefix = nonce
        return prefix + self._process(bytes(data))


class StreamDecryptor:
    """Decrypts one direction of a connection, reading the nonce first."""

    def __init__(self, cipher: StreamCipher) -> None:
        self._cipher = cipher
        self._chunk = bytearray()
        self._nonce = b""
        self._process: _Transform | None = None
        self._recorded = False

    def _checks_replay(self) -> bool:
        return self._cipher.method >= StreamMethod.RC4_MD5

    def _replayed(self) -> bool:
        return self._cipher.nonce_filter.check(self._nonce)

    def decrypt(self, data: bytes) -> bytes:
        """Decrypt the next chunk.

        Raises NeedMoreData until the nonce and some payload have arrived,
        and CryptoError when the nonce has been seen before.
        """
        data = bytes(data)
        if self._process is None:
            size = self._cipher.nonce_size
            need = size - len(self._chunk)
            self._chunk += data[:need]
            data = data[need:]
            if len(self._chunk) < size:
                raise NeedMoreData
            self._nonce = bytes(self._chunk)
            self._process = self._cipher._transform(self._nonce, False)
            if self._checks_replay() and self._replayed():
                log.error("crypto: stream: repeat IV detected")
                raise CryptoError("repeat IV detected")

        if not data:
            raise NeedMoreData

        plaintext = self._process(data)

        if not self._recorded and self._checks_replay():
            if self._replayed():
                log.error("crypto: stream: repeat IV detected")
                raise CryptoError("repeat IV detected")
            self._cipher.nonce_filter.add(self._nonce)
            self._recorded = True
        return plaintext


def stream_init(key: bytes, method: str | None) -> StreamCipher:
    """Build a stream cipher from a method name.

    A missing name or ``table`` is refused; an unknown name falls back to
    chacha20-ietf.
    """
    if method is None:
        raise CryptoError("Table is deprecated")
    try:
        chosen = StreamMethod.from_name(method)
    except KeyError:
        log.error("Invalid cipher name: %s, use chacha20-ietf instead", method)
        chosen = StreamMethod.CHACHA20_IETF
    if chosen is StreamMethod.TABLE:
        log.error("Table is deprecated")
        raise CryptoError("Table is deprecated")
    return StreamCipher(chosen, key)