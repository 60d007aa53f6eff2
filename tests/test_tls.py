import pytest

from ssrelay.tls import (
    IncompleteTlsRecord,
    InvalidClientHello,
    NoServerName,
    TlsParseError,
    TlsProtocol,
    parse_tls_header,
    tls_protocol,
)


def _len2(n):
    return n.to_bytes(2, "big")


def sni_extension(*entries):
    body = b"".join(bytes([kind]) + _len2(len(name)) + name for kind, name in entries)
    server_list = _len2(len(body)) + body
    return b"\x00\x00" + _len2(len(server_list)) + server_list


def other_extension(ext_type=0x000A, payload=b"\x00\x02\x00\x17"):
    return _len2(ext_type) + _len2(len(payload)) + payload


def client_hello(extensions=b"", major=3, minor=1, with_ext_block=True,
                 handshake_type=1):
    body = b"\x03\x03" + b"\x00" * 32 + b"\x00" + b"\x00\x02\x00\x2f" + b"\x01\x00"
    if with_ext_block:
        body += _len2(len(extensions)) + extensions
    handshake = bytes([handshake_type]) + len(body).to_bytes(3, "big") + body
    return b"\x16" + bytes([major, minor]) + _len2(len(handshake)) + handshake


def test_extracts_host_name():
    record = client_hello(sni_extension((0, b"www.example.com")))
    assert parse_tls_header(record) == "www.example.com"


def test_skips_other_extensions_before_sni():
    record = client_hello(other_extension() + sni_extension((0, b"example.com")))
    assert parse_tls_header(record) == "example.com"


def test_skips_unknown_name_types():
    record = client_hello(sni_extension((1, b"ignored"), (0, b"example.com")))
    assert parse_tls_header(record) == "example.com"


def test_host_name_stops_at_nul():
    record = client_hello(sni_extension((0, b"example.com\x00junk")))
    assert parse_tls_header(record) == "example.com"


def test_trailing_bytes_after_record_are_ignored():
    record = client_hello(sni_extension((0, b"example.com")))
    assert parse_tls_header(record + b"\xff\xff\xff") == "example.com"


def test_short_header_is_incomplete():
    with pytest.raises(IncompleteTlsRecord):
        parse_tls_header(b"\x16\x03\x01")


def test_truncated_record_is_incomplete():
    record = client_hello(sni_extension((0, b"example.com")))
    with pytest.raises(IncompleteTlsRecord):
        parse_tls_header(record[:-1])


def test_not_a_handshake():
    with pytest.raises(InvalidClientHello):
        parse_tls_header(b"\x17\x03\x01\x00\x00")


def test_ssl2_client_hello_has_no_sni():
    with pytest.raises(NoServerName):
        parse_tls_header(b"\x80\x2e\x01\x00\x02\x00\x15")


def test_old_ssl_version_has_no_sni():
    record = client_hello(sni_extension((0, b"example.com")), major=2, minor=0)
    with pytest.raises(NoServerName):
        parse_tls_header(record)


def test_ssl3_without_extensions_has_no_sni():
    record = client_hello(major=3, minor=0, with_ext_block=False)
    with pytest.raises(NoServerName):
        parse_tls_header(record)


def test_tls_without_extension_block_is_invalid():
    record = client_hello(major=3, minor=1, with_ext_block=False)
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_not_a_client_hello():
    record = client_hello(sni_extension((0, b"example.com")), handshake_type=2)
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_no_sni_extension():
    record = client_hello(other_extension())
    with pytest.raises(NoServerName):
        parse_tls_header(record)


def test_only_unknown_name_types():
    record = client_hello(sni_extension((1, b"ignored")))
    with pytest.raises(NoServerName):
        parse_tls_header(record)


def test_extension_overrun_is_invalid():
    bad_ext = b"\x00\x00\x00\x40" + b"\x00\x05"
    record = client_hello(bad_ext)
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_misaligned_extensions_are_invalid():
    record = client_hello(other_extension() + b"\x00\x01")
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_errors_share_base_class():
    with pytest.raises(TlsParseError):
        parse_tls_header(b"")


def test_protocol_defaults_and_delegates():
    record = client_hello(sni_extension((0, b"example.com")))
    assert TlsProtocol.default_port == 443
    assert tls_protocol.parse_packet(record) == parse_tls_header(record)