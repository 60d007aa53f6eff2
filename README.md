# ssrelay

`ssrelay` is the server side of an encrypted TCP relay, built on `asyncio`. A client
connects and sends an encrypted stream. The stream opens with a header naming a target.
The server decrypts that header, resolves the target if it is a host name, and connects
to it. It then relays traffic in both directions, encrypting what goes back to the
client.

The wire format is the shadowsocks stream-cipher format:

    [nonce][encrypted payload]

The decrypted stream starts with a target address header:

    +------+----------+----------+
    | ATYP | DST.ADDR | DST.PORT |
    +------+----------+----------+
    |  1   | Variable |    2     |
    +------+----------+----------+

`ATYP` is 1 for IPv4, 3 for a length-prefixed host name and 4 for IPv6.

## Installation

    pip install .

To run the tests:

    pip install ".[test]"
    pytest

## Running the server

    ssrelay -s 0.0.0.0 -p 8388 -k password -m aes-256-cfb

Options:

| Option | Meaning |
| --- | --- |
| `-s HOST` | Address to listen on. Can be repeated, up to 10 times. The default is `0.0.0.0`. |
| `-p PORT` | Port to listen on. Required. |
| `-k`, `--password` | Password. A key is derived from it with chained MD5 digests. |
| `--key` | Base64 key, used instead of a password. Standard and URL-safe alphabets are both accepted. The key must be at least the cipher's key size and is truncated to that size. |
| `-m METHOD` | Cipher method. The default is `chacha20-ietf`. |
| `-t SECONDS` | Idle timeout. The default is 60. |
| `-c FILE` | JSON config file. |
| `-b ADDR` | Local IPv4 or IPv6 address that outgoing connections bind to. |
| `-i IFACE` | Network interface that outgoing connections bind to. This needs `SO_BINDTODEVICE`. |
| `-a USER` | User to switch to once the listening sockets are open. |
| `-n N` | Raise the open-file limit to N. This only applies when N is above 1024. |
| `-6` | Prefer IPv6 addresses when resolving targets. |
| `--no-delay` | Keep `TCP_NODELAY` on. By default it is turned off after the first response. |
| `--long-idle` | Do not time out idle connections once relaying has begun. |
| `--reuse-port` | Set `SO_REUSEPORT` on the listening sockets. |
| `--manager-address ADDR` | Send traffic reports to a manager. See below. |
| `-v` | Debug logging. |
| `-u`, `-U` | Ask for a UDP relay. See "Limitations". |
| `-d`, `--fast-open` | Accepted, but have no effect. See "Limitations". |

`-A` is refused with an error. A missing port, or a missing password and key, prints the
usage text and exits with status 1.

### Config file

Values from the command line take precedence over the config file. The file is a JSON
object that may hold the following keys:

* `server`, a string or a list
* `server_port`, `password`, `key`, `method`, `timeout`, `user`
* `nameserver`
* `mode`, one of `tcp_only`, `tcp_and_udp` or `udp_only`
* `no_delay`, `reuse_port`, `fast_open`, `ipv6_first`
* `nofile`
* `local_address`, `local_ipv4_address`, `local_ipv6_address`

### Cipher methods

These methods are supported:

* `rc4`, `rc4-md5`
* `aes-{128,192,256}-cfb`, `aes-{128,192,256}-ctr`
* `bf-cfb`, `camellia-{128,192,256}-cfb`
* `salsa20`, `chacha20`, `chacha20-ietf`

The following are not supported and are rejected:

* `table`
* `cast5-cfb`, `des-cfb`, `idea-cfb`, `rc2-cfb`, `seed-cfb`

Any other name falls back to `chacha20-ietf`.

### Connection handling

The client has a limited time to send its header. That time is the smaller of 30 seconds
and the timeout, plus a random 0 to 29 seconds. Some clients split the opening data into
several small pieces; the server treats too many of them as malicious fragmentation. If
a client fails authentication, has a malformed header or is fragmented this way, the
server logs the event. It then reads and discards that client's data until the deadline
instead of closing at once. Once relaying has begun, a connection is closed after
`timeout` seconds without traffic, unless `--long-idle` is set. `SIGINT` and `SIGTERM`
stop the server.

### Traffic reports

With `--manager-address`, the server sends the combined bytes received from clients and
from targets every 10 seconds. Each report is a NUL-terminated datagram:

    stat: {"<port>":<bytes>}

The address can take two forms:

* `host:port` or `[v6]:port`: the report is sent over UDP.
* Anything else is taken as the path of a Unix datagram socket. The sender binds to
  `/tmp/shadowsocks.<port>` for the duration of the send.

## Library use

| Module | Contents |
| --- | --- |
| `ssrelay.stream` | `stream_init(key, method)`, and `StreamCipher` with `encrypt_all` / `decrypt_all` for single packets. It also provides `encryptor()` / `decryptor()`, which return `StreamEncryptor` / `StreamDecryptor` for streams. Also `StreamMethod`, `NonceFilter`, `CryptoError`, `NeedMoreData`. |
| `ssrelay.address` | `parse_request_header(data)` returns a `(TargetAddress, payload)` pair. `pack_address(host, port)` encodes a header. Also `validate_hostname`, `AddressType`, `HeaderError`. |
| `ssrelay.tls` | `parse_tls_header(data)` and `TlsProtocol.parse_packet` (`default_port` 443) return the SNI host name of a TLS ClientHello. Failures raise `IncompleteTlsRecord`, `NoServerName` or `InvalidClientHello`, all subclasses of `TlsParseError`. |
| `ssrelay.stats` | `format_stat(port, traffic)` and `StatReporter(manager_addr, server_port).report(tx, rx)`. |
| `ssrelay.relay` | `ServerConfig` and `Server(config, cipher)`, with `serve()` and `handle_client(reader, writer)`. `ServerConfig.access_denied` and `ServerConfig.outbound_blocked` are optional callables. They reject clients by address, or targets by host name or IP. |
| `ssrelay.cli` | `parse_args(argv)` and `main(argv)`. |

Every `StreamCipher` carries a `NonceFilter`. A nonce that cipher has already used or seen
is refused as a replay. Give the sending side and the receiving side separate ciphers:

```python
from ssrelay.stream import stream_init

key = bytes(32)
sender = stream_init(key, "chacha20-ietf")
receiver = stream_init(key, "chacha20-ietf")

packet = sender.encrypt_all(b"hello")
assert receiver.decrypt_all(packet) == b"hello"

enc, dec = sender.encryptor(), receiver.decryptor()
assert dec.decrypt(enc.encrypt(b"stream data")) == b"stream data"
```

`StreamDecryptor.decrypt` raises `NeedMoreData` until the nonce and some payload have
arrived.

## Limitations

* Only the TCP relay exists. `-U` (UDP only) exits with an error. `-u` logs an error and
  relays TCP only.
* TCP fast open is not available; `--fast-open` is ignored.
* Custom name servers (`-d`, `nameserver`) are ignored, and the system resolver is used.
* Only stream ciphers are provided; there are no AEAD ciphers.
* There is no ACL file option and no plugin support. Access control is available only
  through the `ServerConfig` callables.
* The server does not daemonize and writes no pid file.
* The package has no client side: it provides no local proxy.