"""Asyncio TCP relay server for the shadowsocks stream-cipher protocol."""

__version__ = "0.1.0"

__all__ = ["address", "cli", "relay", "stats", "stream", "tls"]