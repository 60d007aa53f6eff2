import pytest

from ssrelay.stream import (
    CryptoError,
    NeedMoreData,
    NonceFilter,
    StreamCipher,
    StreamMethod,
    stream_init,
)

SUPPORTED = [
    StreamMethod.RC4,
    StreamMethod.RC4_MD5,
    StreamMethod.AES_128_CFB,
    StreamMethod.AES_192_CFB,
    StreamMethod.AES_256_CFB,
    StreamMethod.AES_128_CTR,
    StreamMethod.AES_192_CTR,
    StreamMethod.AES_256_CTR,
    StreamMethod.BF_CFB,
    StreamMethod.CAMELLIA_128_CFB,
    StreamMethod.CAMELLIA_192_CFB,
    StreamMethod.CAMELLIA_256_CFB,
    StreamMethod.SALSA20,
    StreamMethod.CHACHA20,
    StreamMethod.CHACHA20_IETF,
]

UNSUPPORTED = [
    StreamMethod.CAST5_CFB,
    StreamMethod.DES_CFB,
    StreamMethod.IDEA_CFB,
    StreamMethod.RC2_CFB,
    StreamMethod.SEED_CFB,
]

PLAINTEXT = bytes(range(256)) * 3 + b"tail bytes"


def make_key(method):
    return bytes((i * 7 + 3) % 256 for i in range(method.key_size))


def make_cipher(method, nonce_filter=None):
    return StreamCipher(method, make_key(method), nonce_filter)


def test_method_names_round_trip():
    for method in StreamMethod:
        assert StreamMethod.from_name(method.cipher_name) is method


def test_method_tables_from_source():
    assert StreamMethod.from_name("aes-256-cfb") is StreamMethod.AES_256_CFB
    assert StreamMethod.AES_256_CFB.key_size == 32
    assert StreamMethod.CHACHA20_IETF.cipher_name == "chacha20-ietf"
    assert StreamMethod.CHACHA20_IETF.nonce_size == 12
    assert StreamMethod.RC4_MD5.nonce_size == 16


def test_unknown_name_falls_back_to_chacha20_ietf():
    cipher = stream_init(make_key(StreamMethod.CHACHA20_IETF), "no-such-cipher")
    assert cipher.method is StreamMethod.CHACHA20_IETF


def test_stream_init_picks_named_method():
    cipher = stream_init(make_key(StreamMethod.AES_128_CTR), "aes-128-ctr")
    assert cipher.method is StreamMethod.AES_128_CTR


@pytest.mark.parametrize("name", ["table", None])
def test_table_is_refused(name):
    with pytest.raises(CryptoError):
        stream_init(b"", name)


@pytest.mark.parametrize("method", UNSUPPORTED)
def test_unsupported_methods_raise(method):
    with pytest.raises(CryptoError):
        make_cipher(method)


def test_wrong_key_length_raises():
    with pytest.raises(CryptoError):
        StreamCipher(StreamMethod.AES_256_CFB, b"short", None)


@pytest.mark.parametrize("method", SUPPORTED)
def test_encrypt_all_round_trip(method):
    cipher = make_cipher(method)
    packet = cipher.encrypt_all(PLAINTEXT)
    assert len(packet) == method.nonce_size + len(PLAINTEXT)
    receiver = make_cipher(method)
    assert receiver.decrypt_all(packet) == PLAINTEXT


@pytest.mark.parametrize("method", SUPPORTED)
def test_streaming_round_trip_in_odd_chunks(method):
    sender = make_cipher(method).encryptor()
    wire = b"".join(
        sender.encrypt(PLAINTEXT[i:i + 37]) for i in range(0, len(PLAINTEXT), 37)
    )
    assert len(wire) == method.nonce_size + len(PLAINTEXT)

    decryptor = make_cipher(method).decryptor()
    out = bytearray()
    for i in range(0, len(wire), 13):
        try:
            out += decryptor.decrypt(wire[i:i + 13])
        except NeedMoreData:
            pass
    assert bytes(out) == PLAINTEXT


@pytest.mark.parametrize("method", SUPPORTED)
def test_chunked_stream_matches_one_shot_decryption(method):
    sender = make_cipher(method).encryptor()
    wire = b"".join(
        sender.encrypt(PLAINTEXT[i:i + 50]) for i in range(0, len(PLAINTEXT), 50)
    )
    assert make_cipher(method).decrypt_all(wire) == PLAINTEXT


def test_decryptor_needs_whole_nonce_and_payload():
    method = StreamMethod.AES_128_CFB
    wire = make_cipher(method).encryptor().encrypt(b"hello")
    decryptor = make_cipher(method).decryptor()
    with pytest.raises(NeedMoreData):
        decryptor.decrypt(wire[:5])
    with pytest.raises(NeedMoreData):
        decryptor.decrypt(wire[5:method.nonce_size])
    assert decryptor.decrypt(wire[method.nonce_size:]) == b"hello"


def test_decrypt_all_rejects_short_packet():
    cipher = make_cipher(StreamMethod.CHACHA20)
    with pytest.raises(CryptoError):
        cipher.decrypt_all(b"\x00" * StreamMethod.CHACHA20.nonce_size)


def test_decrypt_all_detects_replay():
    method = StreamMethod.SALSA20
    packet = make_cipher(method).encrypt_all(b"payload")
    receiver = make_cipher(method)
    assert receiver.decrypt_all(packet) == b"payload"
    with pytest.raises(CryptoError):
        receiver.decrypt_all(packet)


def test_stream_decryptor_detects_replay():
    method = StreamMethod.AES_256_CTR
    wire = make_cipher(method).encryptor().encrypt(b"first connection")
    receiver = make_cipher(method)
    assert receiver.decryptor().decrypt(wire) == b"first connection"
    with pytest.raises(CryptoError):
        receiver.decryptor().decrypt(wire)


def test_encrypting_side_records_its_nonces():
    shared = NonceFilter()
    cipher = make_cipher(StreamMethod.CHACHA20_IETF, shared)
    packet = cipher.encrypt_all(b"data")
    assert shared.check(packet[:StreamMethod.CHACHA20_IETF.nonce_size]) is True


def test_plain_rc4_has_no_nonce_and_is_deterministic():
    cipher = make_cipher(StreamMethod.RC4)
    first = cipher.encrypt_all(PLAINTEXT)
    second = cipher.encrypt_all(PLAINTEXT)
    assert len(first) == len(PLAINTEXT)
    assert first == second
    assert cipher.decrypt_all(first) == PLAINTEXT
    assert cipher.decrypt_all(second) == PLAINTEXT


def test_fresh_nonce_per_packet():
    cipher = make_cipher(StreamMethod.AES_128_CFB)
    size = StreamMethod.AES_128_CFB.nonce_size
    nonces = {cipher.encrypt_all(b"x")[:size] for _ in range(20)}
    assert len(nonces) == 20


def test_nonce_filter_remembers():
    nonce_filter = NonceFilter()
    assert nonce_filter.check(b"abc") is False
    nonce_filter.add(b"abc")
    assert nonce_filter.check(b"abc") is True
    assert nonce_filter.check(b"abd") is False


def test_nonce_filter_forgets_oldest_generation():
    nonce_filter = NonceFilter(capacity=2)
    for nonce in (b"a", b"b", b"c", b"d"):
        nonce_filter.add(nonce)
    assert all(nonce_filter.check(n) for n in (b"a", b"b", b"c", b"d"))
    nonce_filter.add(b"e")
    assert nonce_filter.check(b"a") is False
    assert nonce_filter.check(b"b") is False
    assert nonce_filter.check(b"c") is True
    assert nonce_filter.check(b"e") is True


def test_nonce_filter_rejects_bad_capacity():
    with pytest.raises(ValueError):
        NonceFilter(capacity=0)