"""Extract the Server Name Indication from a TLS ClientHello record."""

from __future__ import annotations

import logging

__all__ = [
    "TlsParseError",
    "IncompleteTlsRecord",
    "NoServerName",
    "InvalidClientHello",
    "TlsProtocol",
    "parse_tls_header",
    "tls_protocol",
]

log = logging.getLogger(__name__)

TLS_HEADER_LEN = 5
TLS_HANDSHAKE_CONTENT_TYPE = 0x16
TLS_HANDSHAKE_TYPE_CLIENT_HELLO = 0x01
_SERVER_NAME_EXTENSION = 0x0000
_HOST_NAME_TYPE = 0x00


class TlsParseError(ValueError):
    """Base class for failures to find a server name in a TLS record."""


class IncompleteTlsRecord(TlsParseError):
    """More bytes are needed before the record can be parsed."""


class NoServerName(TlsParseError):
    """The handshake is valid but carries no server name."""


class InvalidClientHello(TlsParseError):
    """The bytes are not a well-formed TLS ClientHello."""


def _u16(data: bytes, pos: int) -> int:
    return int.from_bytes(data[pos:pos + 2], "big")


def _signed(byte: int) -> int:
    return byte - 256 if byte >= 0x80 else byte


def parse_tls_header(data: bytes) -> str:
    """Return the first host name found in the SNI extension of a ClientHello.

    Raises IncompleteTlsRecord, NoServerName or InvalidClientHello.
    """
    data = bytes(data)
    if len(data) < TLS_HEADER_LEN:
        raise IncompleteTlsRecord("record shorter than the TLS header")

    # SSL 2.0 compatible ClientHello: high bit of the length, type ClientHello.
    if data[0] & 0x80 and data[2] == 1:
        log.debug("Received SSL 2.0 Client Hello which can not support SNI.")
        raise NoServerName("SSL 2.0 ClientHello carries no SNI")

    if data[0] != TLS_HANDSHAKE_CONTENT_TYPE:
        log.debug("Request did not begin with TLS handshake.")
        raise InvalidClientHello("not a TLS handshake record")

    major = _signed(data[1])
    minor = _signed(data[2])
    if major < 3:
        log.debug("Received SSL %d.%d handshake which can not support SNI.",
                  major, minor)
        raise NoServerName(f"SSL {major}.{minor} handshake carries no SNI")

    record_len = _u16(data, 3) + TLS_HEADER_LEN
    if len(data) < record_len:
        raise IncompleteTlsRecord("TLS record not yet complete")
    data = data[:record_len]
    end = record_len

    pos = TLS_HEADER_LEN
    if pos + 1 > end:
        raise InvalidClientHello("missing handshake type")
    if data[pos] != TLS_HANDSHAKE_TYPE_CLIENT_HELLO:
        log.debug("Not a client hello")
        raise InvalidClientHello("handshake is not a ClientHello")

    # Handshake type (1), length (3), version (2), random (32).
    pos += 38

    if pos + 1 > end:
        raise InvalidClientHello("truncated session id")
    pos += 1 + data[pos]

    if pos + 2 > end:
        raise InvalidClientHello("truncated cipher suites")
    pos += 2 + _u16(data, pos)

    if pos + 1 > end:
        raise InvalidClientHello("truncated compression methods")
    pos += 1 + data[pos]

    if pos == end and major == 3 and minor == 0:
        log.debug("Received SSL 3.0 handshake without extensions")
        raise NoServerName("SSL 3.0 handshake without extensions")

    if pos + 2 > end:
        raise InvalidClientHello("truncated extensions length")
    ext_len = _u16(data, pos)
    pos += 2
    if pos + ext_len > end:
        raise InvalidClientHello("extensions overrun the record")
    return _parse_extensions(data[pos:pos + ext_len])


def _parse_extensions(data: bytes) -> str:
    pos = 0
    end = len(data)
    while pos + 4 <= end:
        length = _u16(data, pos + 2)
        if _u16(data, pos) == _SERVER_NAME_EXTENSION:
            if pos + 4 + length > end:
                raise InvalidClientHello("server name extension overruns")
            return _parse_server_name_extension(data[pos + 4:pos + 4 + length])
        pos += 4 + length
    if pos != end:
        raise InvalidClientHello("extensions do not end where expected")
    raise NoServerName("no server name extension")


def _parse_server_name_extension(data: bytes) -> str:
    pos = 2  # skip the server name list length
    end = len(data)
    while pos + 3 < end:
        length = _u16(data, pos + 1)
        if pos + 3 + length > end:
            raise InvalidClientHello("server name entry overruns")
        name_type = data[pos]
        if name_type == _HOST_NAME_TYPE:
            raw = data[pos + 3:pos + 3 + length]
            return raw.split(b"\x00", 1)[0].decode("latin-1")
        log.debug("Unknown server name extension name type: %d", name_type)
        pos += 3 + length
    if pos != end:
        raise InvalidClientHello("server name list does not end where expected")
    raise NoServerName("no host_name entry in server name extension")


class TlsProtocol:
    """Sniffs the target host of a TLS connection from its first packet."""

    default_port = 443

    def parse_packet(self, data: bytes) -> str:
        """Return the SNI host name carried by ``data``."""
        return parse_tls_header(data)


tls_protocol = TlsProtocol()