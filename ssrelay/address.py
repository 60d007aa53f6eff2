"""The target-address header that opens every relayed TCP stream.

    +------+----------+----------+
    | ATYP | DST.ADDR | DST.PORT |
    +------+----------+----------+
    |  1   | Variable |    2     |
    +------+----------+----------+
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import IntEnum

__all__ = [
    "AddressType",
    "TargetAddress",
    "HeaderError",
    "parse_request_header",
    "pack_address",
    "validate_hostname",
]

ADDRTYPE_MASK = 0x0F
_IPV4_LEN = 4
_IPV6_LEN = 16
_MAX_HOSTNAME_LEN = 255
_LABEL = re.compile(r"[A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9_])?")


class AddressType(IntEnum):
    """The ATYP values of the header."""

    IPV4 = 1
    DOMAIN = 3
    IPV6 = 4


class HeaderError(ValueError):
    """The request header is malformed."""


@dataclass(frozen=True)
class TargetAddress:
    """Where the client asked to be connected.

    ``needs_resolve`` is true when ``host`` is a name rather than an IP
    literal and must be looked up before connecting.
    """

    atyp: AddressType
    host: str
    port: int
    needs_resolve: bool = False

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def validate_hostname(name: str) -> bool:
    """Whether ``name`` is a syntactically valid DNS host name."""
    if not name or len(name) > _MAX_HOSTNAME_LEN or name.startswith("."):
        return False
    labels = name.split(".")
    if labels[-1] == "":
        labels.pop()
    return bool(labels) and all(_LABEL.fullmatch(label) for label in labels)


def parse_request_header(data: bytes) -> tuple[TargetAddress, bytes]:
    """Split decrypted stream data into its target address and the payload after it.

    Raises HeaderError when the header is truncated, of an unknown type, or
    names an invalid host.
    """
    data = bytes(data)
    if not data:
        raise HeaderError("invalid address type")
    raw_type = data[0] & ADDRTYPE_MASK
    offset = 1

    if raw_type == AddressType.IPV4:
        if len(data) < _IPV4_LEN + 3:
            raise HeaderError("invalid length for ipv4 address")
        host = str(ipaddress.IPv4Address(data[offset:offset + _IPV4_LEN]))
        offset += _IPV4_LEN
        atyp, needs_resolve = AddressType.IPV4, False
    elif raw_type == AddressType.DOMAIN:
        name_len = data[offset] if len(data) > offset else 0
        if len(data) <= offset or name_len + 4 > len(data):
            raise HeaderError("invalid host name length")
        raw = data[offset + 1:offset + 1 + name_len]
        host = raw.split(b"\x00", 1)[0].decode("latin-1")
        offset += name_len + 1
        atyp = AddressType.DOMAIN
        try:
            host = str(ipaddress.ip_address(host))
            needs_resolve = False
        except ValueError:
            if not validate_hostname(host):
                raise HeaderError("invalid host name") from None
            needs_resolve = True
    elif raw_type == AddressType.IPV6:
        if len(data) < _IPV6_LEN + 3:
            raise HeaderError("invalid length for ipv6 address")
        host = str(ipaddress.IPv6Address(data[offset:offset + _IPV6_LEN]))
        offset += _IPV6_LEN
        atyp, needs_resolve = AddressType.IPV6, False
    else:
        raise HeaderError("invalid address type")

    if len(data) < offset + 2:
        raise HeaderError("invalid request length")
    port = int.from_bytes(data[offset:offset + 2], "big")
    offset += 2
    return TargetAddress(atyp, host, port, needs_resolve), data[offset:]


def pack_address(host: str, port: int) -> bytes:
    """Encode ``host`` and ``port`` as a request header.

    IP literals are written as IPv4 or IPv6 addresses, anything else as a
    domain name.
    """
    if not 0 <= port <= 0xFFFF:
        raise HeaderError(f"port out of range: {port}")
    port_bytes = port.to_bytes(2, "big")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode("idna") if not host.isascii() else host.encode("ascii")
        if not name or len(name) > _MAX_HOSTNAME_LEN:
            raise HeaderError(f"invalid host name length: {len(name)}") from None
        return bytes([AddressType.DOMAIN, len(name)]) + name + port_bytes
    atyp = AddressType.IPV4 if address.version == 4 else AddressType.IPV6
    return bytes([atyp]) + address.packed + port_bytes