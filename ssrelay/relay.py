"""The TCP relay: decrypt a client's stream, connect to its target and pipe data."""

from __future__ import annotations

import asyncio
import logging
import random
import socket
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable

from .address import HeaderError, TargetAddress, parse_request_header
from .stats import UPDATE_INTERVAL, StatReporter
from .stream import CryptoError, NeedMoreData, StreamCipher, StreamDecryptor

__all__ = ["ServerConfig", "Server", "MAX_REQUEST_TIMEOUT", "MAX_FRAG"]

log = logging.getLogger(__name__)

MAX_REQUEST_TIMEOUT = 30
MAX_FRAG = 1
BUF_SIZE = 16 * 1024
SSMAXCONN = 1024


@dataclass
class ServerConfig:
    """Settings of a relay server.

    ``access_denied`` is asked about each client address and
    ``outbound_blocked`` about each target host or IP; either may be None.
    """

    port: int | str
    hosts: list[str | None] = field(default_factory=lambda: ["0.0.0.0"])
    timeout: float = 60.0
    no_delay: bool = False
    long_idle: bool = False
    reuse_port: bool = False
    ipv6_first: bool = False
    local_addr_v4: str | None = None
    local_addr_v6: str | None = None
    interface: str | None = None
    manager_addr: str | None = None
    access_denied: Callable[[str], bool] | None = None
    outbound_blocked: Callable[[str], bool] | None = None
    backlog: int = SSMAXCONN


class _ConnectFailed(Exception):
    """The target could not be reached or is not allowed."""


@dataclass
class _PipeState:
    last_activity: float
    stopped: bool = False
    responded: bool = False


def _peer_host(writer: asyncio.StreamWriter) -> str | None:
    peername = writer.get_extra_info("peername")
    if isinstance(peername, tuple) and peername:
        return str(peername[0])
    return None


def _set_nodelay(writer: asyncio.StreamWriter, enabled: bool) -> None:
    sock = writer.get_extra_info("socket")
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    with suppress(OSError):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(enabled))


def _choose_address(infos: list, ipv6_first: bool) -> tuple:
    preferred = socket.AF_INET6 if ipv6_first else socket.AF_INET
    for info in infos:
        if info[0] == preferred:
            return info
    return infos[0]


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with suppress(Exception):
        await writer.wait_closed()


class Server:
    """Accepts encrypted client streams and relays them to their targets."""

    def __init__(self, config: ServerConfig, cipher: StreamCipher) -> None:
        self.config = config
        self.cipher = cipher
        self.tx = 0
        self.rx = 0
        self.listen_addresses: list[tuple] = []
        self._connections: set[asyncio.Task] = set()

    async def serve(self) -> None:
        """Listen on every configured host and relay until cancelled.

        Raises OSError when no address could be bound.
        """
        servers: list[asyncio.AbstractServer] = []
        for host in self.config.hosts:
            shown = f"[{host}]" if host and ":" in host else (host or "0.0.0.0")
            log.info("tcp server listening at %s:%s", shown, self.config.port)
            try:
                srv = await asyncio.start_server(
                    self.handle_client, host, self.config.port,
                    reuse_address=True, reuse_port=self.config.reuse_port or None,
                    backlog=self.config.backlog)
            except OSError as exc:
                log.error("bind: %s", exc)
                continue
            servers.append(srv)
            self.listen_addresses.extend(s.getsockname() for s in srv.sockets)
        if not servers:
            raise OSError("failed to listen on any address")

        stats_task = None
        if self.config.manager_addr is not None:
            stats_task = asyncio.create_task(self._report_stats())
        try:
            await asyncio.gather(*(srv.serve_forever() for srv in servers))
        finally:
            if stats_task is not None:
                stats_task.cancel()
            for srv in servers:
                srv.close()
            connections = list(self._connections)
            for task in connections:
                task.cancel()
            await asyncio.gather(*connections, return_exceptions=True)
            self.listen_addresses.clear()
            log.debug("closed gracefully")

    async def _report_stats(self) -> None:
        reporter = StatReporter(self.config.manager_addr, str(self.config.port))
        while True:
            await asyncio.sleep(UPDATE_INTERVAL)
            try:
                reporter.report(self.tx, self.rx)
            except OSError as exc:
                log.error("stat: %s", exc)

    async def handle_client(self, reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> None:
        """Serve one client connection until either side closes or it times out."""
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = _peer_host(writer)
        try:
            access_denied = self.config.access_denied
            if peer is not None and access_denied is not None and access_denied(peer):
                log.error("Access denied from %s", peer)
                return
            _set_nodelay(writer, True)
            await self._serve_connection(reader, writer, peer)
        except OSError as exc:
            log.debug("connection error: %s", exc)
        finally:
            await _close_writer(writer)
            if task is not None:
                self._connections.discard(task)

    def _report(self, peer: str | None, info: str) -> None:
        if peer is not None:
            log.error("failed to handshake with %s: %s", peer, info)

    async def _read_until(self, reader: asyncio.StreamReader, deadline: float) -> bytes:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            log.debug("TCP connection timeout")
            return b""
        try:
            return await asyncio.wait_for(reader.read(BUF_SIZE), remaining)
        except asyncio.TimeoutError:
            log.debug("TCP connection timeout")
            return b""

    async def _discard(self, reader: asyncio.StreamReader, deadline: float) -> None:
        while await self._read_until(reader, deadline):
            pass

    async def _serve_connection(self, reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter, peer: str | None) -> None:
        loop = asyncio.get_running_loop()
        request_timeout = (min(MAX_REQUEST_TIMEOUT, self.config.timeout)
                           + random.randrange(MAX_REQUEST_TIMEOUT))
        deadline = loop.time() + request_timeout
        decryptor = self.cipher.decryptor()

        frag = 0
        while True:
            data = await self._read_until(reader, deadline)
            if not data:
                return
            self.tx += len(data)
            try:
                plaintext = decryptor.decrypt(data)
            except CryptoError:
                self._report(peer, "authentication error")
                await self._discard(reader, deadline)
                return
            except NeedMoreData:
                if frag > MAX_FRAG:
                    self._report(peer, "malicious fragmentation")
                    await self._discard(reader, deadline)
                    return
                frag += 1
                continue
            break

        try:
            target, payload = parse_request_header(plaintext)
        except HeaderError as exc:
            self._report(peer, str(exc))
            await self._discard(reader, deadline)
            return

        log.debug("[%s] connect to %s", self.config.port, target)

        blocked = self.config.outbound_blocked
        if target.needs_resolve and blocked is not None and blocked(target.host):
            log.debug("outbound blocked %s", target.host)
            return

        remaining = deadline - loop.time()
        if remaining <= 0:
            return
        try:
            remote_reader, remote_writer = await asyncio.wait_for(
                self._open_remote(target), remaining)
        except (_ConnectFailed, OSError, asyncio.TimeoutError) as exc:
            log.error("connect error: %s", exc)
            return

        try:
            if payload:
                remote_writer.write(payload)
                await remote_writer.drain()
            await self._relay(reader, writer, remote_reader, remote_writer,
                              decryptor, peer)
        finally:
            await _close_writer(remote_writer)

    async def _open_remote(self, target: TargetAddress
                           ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        loop = asyncio.get_running_loop()
        flags = 0 if target.needs_resolve else socket.AI_NUMERICHOST
        try:
            infos = await loop.getaddrinfo(target.host, target.port,
                                           type=socket.SOCK_STREAM,
                                           proto=socket.IPPROTO_TCP, flags=flags)
        except socket.gaierror as exc:
            raise _ConnectFailed(f"unable to resolve {target.host}") from exc
        if not infos:
            raise _ConnectFailed(f"unable to resolve {target.host}")
        family, _, _, _, sockaddr = _choose_address(infos, self.config.ipv6_first)

        blocked = self.config.outbound_blocked
        if blocked is not None and blocked(str(sockaddr[0])):
            log.debug("outbound blocked %s", sockaddr[0])
            raise _ConnectFailed(f"outbound blocked {sockaddr[0]}")

        sock = socket.socket(family, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setblocking(False)
            local = (self.config.local_addr_v4 if family == socket.AF_INET
                     else self.config.local_addr_v6)
            if local:
                sock.bind((local, 0))
            if self.config.interface:
                if not hasattr(socket, "SO_BINDTODEVICE"):
                    raise OSError("binding to an interface is not supported")
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE,
                                self.config.interface.encode())
            await loop.sock_connect(sock, sockaddr)
        except BaseException:
            sock.close()
            raise
        return await asyncio.open_connection(sock=sock)

    async def _relay(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                     remote_reader: asyncio.StreamReader,
                     remote_writer: asyncio.StreamWriter,
                     decryptor: StreamDecryptor, peer: str | None) -> None:
        loop = asyncio.get_running_loop()
        state = _PipeState(last_activity=loop.time())
        tasks = {
            asyncio.create_task(self._client_to_remote(
                reader, remote_writer, decryptor, state, peer)),
            asyncio.create_task(self._remote_to_client(
                remote_reader, writer, remote_writer, state)),
        }
        try:
            while True:
                if self.config.long_idle:
                    timeout = None
                else:
                    timeout = max(0.0, state.last_activity + self.config.timeout
                                  - loop.time())
                done, _ = await asyncio.wait(tasks, timeout=timeout,
                                             return_when=asyncio.FIRST_COMPLETED)
                if done:
                    break
                if loop.time() - state.last_activity >= self.config.timeout:
                    log.debug("TCP connection timeout")
                    break
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    log.debug("relay ended: %s", result)

    async def _client_to_remote(self, reader: asyncio.StreamReader,
                                remote_writer: asyncio.StreamWriter,
                                decryptor: StreamDecryptor, state: _PipeState,
                                peer: str | None) -> None:
        loop = asyncio.get_running_loop()
        while True:
            data = await reader.read(BUF_SIZE)
            if not data:
                return
            state.last_activity = loop.time()
            if state.stopped:
                continue
            self.tx += len(data)
            try:
                plaintext = decryptor.decrypt(data)
            except CryptoError:
                self._report(peer, "authentication error")
                state.stopped = True
                continue
            except NeedMoreData:
                continue
            remote_writer.write(plaintext)
            await remote_writer.drain()

    async def _remote_to_client(self, remote_reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter,
                                remote_writer: asyncio.StreamWriter,
                                state: _PipeState) -> None:
        loop = asyncio.get_running_loop()
        encryptor = self.cipher.encryptor()
        while True:
            data = await remote_reader.read(BUF_SIZE)
            if not data:
                return
            state.last_activity = loop.time()
            self.rx += len(data)
            if state.stopped:
                continue
            writer.write(encryptor.encrypt(data))
            await writer.drain()
            if not state.responded:
                state.responded = True
                # Disable TCP_NODELAY once the first response is sent.
                if not self.config.no_delay:
                    _set_nodelay(writer, False)
                    _set_nodelay(remote_writer, False)