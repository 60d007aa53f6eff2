"""Periodic traffic reports sent to a manager over a datagram socket."""

from __future__ import annotations

import json
import logging
import os
import socket
from contextlib import closing, suppress

__all__ = ["format_stat", "StatReporter", "UPDATE_INTERVAL"]

log = logging.getLogger(__name__)

UPDATE_INTERVAL = 10.0
_CLIENT_PATH_TEMPLATE = "/tmp/shadowsocks.{port}"


def format_stat(port: str, traffic: int) -> str:
    """Render the report line the manager expects: ``stat: {"<port>":<bytes>}``."""
    body = json.dumps({str(port): int(traffic)}, separators=(",", ":"))
    return f"stat: {body}"


def _split_host_port(addr: str) -> tuple[str, str] | None:
    """Split ``host:port`` or ``[v6]:port``; None when either part is missing."""
    if addr.startswith("["):
        close = addr.find("]")
        if close == -1:
            return None
        host, rest = addr[1:close], addr[close + 1:]
        if not rest.startswith(":"):
            return None
        port = rest[1:]
    else:
        host, sep, port = addr.rpartition(":")
        if not sep:
            return None
    if not host or not port:
        return None
    return host, port


class StatReporter:
    """Sends the total traffic of one server port to a manager.

    The manager address is either ``host:port`` (UDP) or the path of a
    Unix datagram socket.
    """

    def __init__(self, manager_addr: str, server_port: str) -> None:
        self.manager_addr = manager_addr
        self.server_port = str(server_port)
        self._inet = _split_host_port(manager_addr)

    @property
    def client_path(self) -> str:
        """Path this reporter binds to when talking over a Unix socket."""
        return _CLIENT_PATH_TEMPLATE.format(port=self.server_port)

    def report(self, tx: int, rx: int) -> None:
        """Send the sum of ``tx`` and ``rx``; raise OSError if it cannot be sent."""
        log.debug("update traffic stat: tx: %d rx: %d", tx, rx)
        message = format_stat(self.server_port, tx + rx).encode() + b"\x00"
        if self._inet is None:
            self._send_unix(message)
        else:
            self._send_inet(message, *self._inet)

    def _send_unix(self, message: bytes) -> None:
        client_path = self.client_path
        with suppress(FileNotFoundError):
            os.unlink(client_path)
        with closing(socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)) as sock:
            sock.bind(client_path)
            try:
                sent = sock.sendto(message, self.manager_addr)
                if sent != len(message):
                    raise OSError(f"short write to manager: {sent} of {len(message)}")
            finally:
                with suppress(FileNotFoundError):
                    os.unlink(client_path)

    def _send_inet(self, message: bytes, host: str, port: str) -> None:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        if not infos:
            raise OSError(f"failed to parse the manager addr {self.manager_addr}")
        family, socktype, proto, _, sockaddr = infos[0]
        with closing(socket.socket(family, socktype, proto)) as sock:
            sent = sock.sendto(message, sockaddr)
            if sent != len(message):
                raise OSError(f"short write to manager: {sent} of {len(message)}")