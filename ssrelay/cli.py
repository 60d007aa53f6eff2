"""Command line entry point of the relay server."""

from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import hashlib
import ipaddress
import json
import logging
import os
import signal
import sys
from contextlib import suppress
from typing import Any, NoReturn

from .relay import Server, ServerConfig
from .stream import CryptoError, StreamCipher, StreamMethod, stream_init

__all__ = ["parse_args", "main", "MAX_REMOTE_NUM", "DEFAULT_METHOD", "DEFAULT_TIMEOUT"]

log = logging.getLogger(__name__)

MAX_REMOTE_NUM = 10
DEFAULT_METHOD = "chacha20-ietf"
DEFAULT_TIMEOUT = 60

TCP_ONLY = "tcp_only"
TCP_AND_UDP = "tcp_and_udp"
UDP_ONLY = "udp_only"
_MODES = (TCP_ONLY, TCP_AND_UDP, UDP_ONLY)


def _fail(message: str) -> NoReturn:
    print(f"error: {message}", file=sys.stderr)
    raise SystemExit(1)


class _Parser(argparse.ArgumentParser):
    """Reports bad options with the usage text and exit status 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> _Parser:
    parser = _Parser(prog="ssrelay", description="Encrypted TCP relay server.")
    parser.add_argument("-s", dest="hosts", action="append", metavar="HOST",
                        help="host name or IP address to listen on (repeatable)")
    parser.add_argument("-p", dest="port", metavar="PORT", help="port to listen on")
    parser.add_argument("-k", "--password", dest="password", help="password")
    parser.add_argument("--key", dest="key", help="base64 encoded key")
    parser.add_argument("-m", dest="method", help="encryption method")
    parser.add_argument("-t", dest="timeout", help="socket timeout in seconds")
    parser.add_argument("-c", dest="conf_path", metavar="CONFIG", help="JSON config file")
    parser.add_argument("-b", dest="local_addr", metavar="ADDR",
                        help="local address to bind outgoing connections to")
    parser.add_argument("-i", dest="interface", help="network interface to bind to")
    parser.add_argument("-d", dest="nameservers", help="name servers")
    parser.add_argument("-a", dest="user", help="user to run as")
    parser.add_argument("-n", dest="nofile", type=int, help="max number of open files")
    parser.add_argument("-u", dest="mode", action="store_const", const=TCP_AND_UDP,
                        help="enable the UDP relay as well")
    parser.add_argument("-U", dest="mode", action="store_const", const=UDP_ONLY,
                        help="enable the UDP relay only")
    parser.add_argument("-v", dest="verbose", action="store_true", help="verbose mode")
    parser.add_argument("-6", dest="ipv6_first", action="store_true",
                        help="resolve host names to IPv6 addresses first")
    parser.add_argument("-A", dest="one_time_auth", action="store_true",
                        help=argparse.SUPPRESS)
    parser.add_argument("--fast-open", dest="fast_open", action="store_true",
                        help="enable TCP fast open")
    parser.add_argument("--reuse-port", dest="reuse_port", action="store_true",
                        help="enable port reuse")
    parser.add_argument("--no-delay", dest="no_delay", action="store_true",
                        help="keep TCP_NODELAY enabled")
    parser.add_argument("--long-idle", dest="long_idle", action="store_true",
                        help="do not time out idle connections")
    parser.add_argument("--manager-address", dest="manager_addr",
                        help="address of the manager receiving traffic stats")
    return parser


def _load_config(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as handle:
            conf = json.load(handle)
    except (OSError, ValueError) as exc:
        _fail(f"invalid config file {path}: {exc}")
    if not isinstance(conf, dict):
        _fail(f"invalid config file {path}: expected a JSON object")
    return conf


def _assign_local_addr(options: argparse.Namespace, text: str | None) -> bool:
    if not text:
        return False
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        log.error("invalid local address: %s", text)
        return False
    if address.version == 4:
        options.local_addr_v4 = str(address)
    else:
        options.local_addr_v6 = str(address)
    return True


def _merge_config(options: argparse.Namespace, conf: dict[str, Any]) -> None:
    if not options.hosts:
        servers = conf.get("server")
        if isinstance(servers, str):
            options.hosts = [servers]
        elif isinstance(servers, list):
            options.hosts = [str(s) for s in servers][:MAX_REMOTE_NUM]
    for attr, name in (("port", "server_port"), ("password", "password"),
                       ("key", "key"), ("method", "method"),
                       ("timeout", "timeout"), ("user", "user"),
                       ("nameservers", "nameserver")):
        if getattr(options, attr) is None and conf.get(name) is not None:
            setattr(options, attr, str(conf[name]))
    if options.mode is None and conf.get("mode") is not None:
        options.mode = str(conf["mode"])
    for attr in ("no_delay", "reuse_port", "fast_open", "ipv6_first"):
        if not getattr(options, attr):
            setattr(options, attr, bool(conf.get(attr, False)))
    if options.nofile is None and conf.get("nofile") is not None:
        options.nofile = int(conf["nofile"])
    if not options.bind_local:
        for name in ("local_address", "local_ipv4_address", "local_ipv6_address"):
            if _assign_local_addr(options, conf.get(name)):
                options.bind_local = True


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the command line, merge an optional config file and apply defaults.

    Exits with status 1 on bad or missing options.
    """
    parser = _build_parser()
    options = parser.parse_args(argv)

    if options.one_time_auth:
        _fail("One time auth has been deprecated. Try AEAD ciphers instead.")

    if options.hosts:
        options.hosts = options.hosts[:MAX_REMOTE_NUM]
    options.local_addr_v4 = None
    options.local_addr_v6 = None
    options.bind_local = _assign_local_addr(options, options.local_addr)

    if options.conf_path is not None:
        _merge_config(options, _load_config(options.conf_path))

    if not options.hosts:
        options.hosts = ["0.0.0.0"]
    if options.port is None or (options.password is None and options.key is None):
        parser.print_usage(sys.stderr)
        _fail("a port and a password or key are required")

    if options.mode is None:
        options.mode = TCP_ONLY
    if options.mode not in _MODES:
        _fail(f"invalid mode: {options.mode}")
    if options.method is None:
        options.method = DEFAULT_METHOD
    if options.timeout is None:
        options.timeout = str(DEFAULT_TIMEOUT)
    try:
        options.timeout = int(options.timeout)
    except ValueError:
        _fail(f"invalid timeout: {options.timeout}")
    return options


def _derive_key(password: str, size: int) -> bytes:
    """Derive a key from a password by chained MD5 digests."""
    secret = password.encode()
    derived = b""
    block = b""
    while len(derived) < size:
        block = hashlib.md5(block + secret).digest()
        derived += block
    return derived[:size]


def _parse_key(text: str, size: int) -> bytes:
    padded = text.strip() + "=" * (-len(text.strip()) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(f"invalid base64 key: {exc}") from exc
    if len(raw) < size:
        raise CryptoError(f"key too short: need {size} bytes, got {len(raw)}")
    return raw[:size]


def _build_cipher(options: argparse.Namespace) -> StreamCipher:
    try:
        size = StreamMethod.from_name(options.method).key_size
    except KeyError:
        size = StreamMethod.CHACHA20_IETF.key_size
    if options.key is not None:
        key = _parse_key(options.key, size)
    else:
        key = _derive_key(options.password, size)
    return stream_init(key, options.method)


def _build_config(options: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        port=options.port,
        hosts=list(options.hosts),
        timeout=float(options.timeout),
        no_delay=options.no_delay,
        long_idle=options.long_idle,
        reuse_port=options.reuse_port,
        ipv6_first=options.ipv6_first,
        local_addr_v4=options.local_addr_v4,
        local_addr_v6=options.local_addr_v6,
        interface=options.interface,
        manager_addr=options.manager_addr,
    )


def _set_nofile(limit: int) -> None:
    try:
        import resource
    except ImportError:
        log.error("setting NOFILE is not supported on this platform")
        return
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (limit, limit))
    except (ValueError, OSError) as exc:
        log.error("failed to set NOFILE to %d: %s", limit, exc)


def _run_as(user: str) -> bool:
    try:
        import pwd
    except ImportError:
        return False
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        try:
            entry = pwd.getpwuid(int(user))
        except (KeyError, ValueError):
            log.error("user %s not found", user)
            return False
    try:
        os.setgroups([])
    except OSError:
        pass
    try:
        os.setgid(entry.pw_gid)
        os.setuid(entry.pw_uid)
    except OSError as exc:
        log.error("failed to switch to user %s: %s", user, exc)
        return False
    return True


async def _run(config: ServerConfig, cipher: StreamCipher, user: str | None) -> int:
    loop = asyncio.get_running_loop()
    server = Server(config, cipher)
    task = asyncio.create_task(server.serve())

    for signum in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, task.cancel)

    while not server.listen_addresses and not task.done():
        await asyncio.sleep(0.01)

    if user is not None and not task.done():
        if not _run_as(user):
            log.error("failed to switch user")
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            return 1
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        log.info("running from root user")

    try:
        await task
    except asyncio.CancelledError:
        return 0
    except OSError as exc:
        log.error("%s", exc)
        return 1
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signum)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the relay server; return the process exit status."""
    options = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
    )

    if options.nofile is not None and options.nofile > 1024:
        log.debug("setting NOFILE to %d", options.nofile)
        _set_nofile(options.nofile)
    if options.ipv6_first:
        log.info("resolving hostname to IPv6 address first")
    if options.fast_open:
        log.error("tcp fast open is not supported by this environment")
        options.fast_open = False
    if options.mode == UDP_ONLY:
        log.info("TCP relay disabled")
        log.error("UDP relay is not supported")
        return 1
    if options.mode == TCP_AND_UDP:
        log.error("UDP relay is not supported, relaying TCP only")
    if options.no_delay:
        log.info("enable TCP no-delay")
    if options.long_idle:
        log.info("enable TCP long idle connections")
    if options.nameservers is not None:
        log.warning("custom nameservers are not supported, using the system resolver")

    log.info("initializing ciphers... %s", options.method)
    try:
        cipher = _build_cipher(options)
    except CryptoError as exc:
        log.error("failed to initialize ciphers: %s", exc)
        return 1

    return asyncio.run(_run(_build_config(options), cipher, options.user))


if __name__ == "__main__":
    sys.exit(main())