"""Tracking of outgoing peer connections."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

_log = logging.getLogger(__name__)


class NetworkError(Exception):
    """Raised when a network operation fails."""


class ConnectionStatus(enum.Enum):
    CONNECTED = "Connected"
    CONNECTING = "Connecting"
    DISCONNECTED = "Disconnected"
    FAILED = "Failed"
    HANDSHAKING = "Handshaking"
    AUTHENTICATED = "Authenticated"


@dataclass
class Connection:
    """A connection to one peer and its traffic counters."""

    peer_id: str
    address: tuple[str, int]
    last_activity: int
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    retry_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    connection_time: int = 0


@dataclass
class ConnectionManager:
    """Active connections, a retry pool and connection limits."""

    active_connections: dict[str, Connection] = field(default_factory=dict)
    connection_pool: dict[str, Connection] = field(default_factory=dict)
    max_connections: int = 100
    connection_timeout: timedelta = timedelta(seconds=30)
    reconnect_attempts: int = 3
    bandwidth_limit: int = 1024 * 1024
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)

    def _now(self) -> int:
        return int(self.clock())

    async def connect(self, address: str, port: int) -> None:
        """Open a TCP connection to ``address:port`` and record it as active."""
        if len(self.active_connections) >= self.max_connections:
            raise NetworkError("Maximum connections reached")
        peer_id = f"{address}:{port}"
        try:
            ip = ipaddress.ip_address(address)
        except ValueError as exc:
            raise NetworkError(f"Invalid address: {peer_id}") from exc
        if not 0 <= port <= 65535:
            raise NetworkError(f"Invalid address: {peer_id}")
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(str(ip), port),
                timeout=self.connection_timeout.total_seconds(),
            )
        except (OSError, asyncio.TimeoutError) as exc:
            _log.error("Failed to connect to %s: %s", peer_id, exc)
            raise NetworkError(f"Connection failed: {exc}") from exc
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        now = self._now()
        self.active_connections[peer_id] = Connection(
            peer_id=peer_id,
            address=(str(ip), port),
            last_activity=now,
            connection_time=now,
        )
        _log.info("Successfully connected to peer: %s", peer_id)

    def disconnect(self, address: str) -> None:
        """Drop the active connection with id ``address``."""
        connection = self.active_connections.pop(address, None)
        if connection is None:
            raise NetworkError("Connection not found")
        connection.status = ConnectionStatus.DISCONNECTED
        _log.info("Disconnected from peer: %s", address)

    def check_connections(self) -> None:
        """Move idle connections to the retry pool, or drop them once retries run out."""
        now = self._now()
        timeout = int(self.connection_timeout.total_seconds())
        for peer_id, connection in list(self.active_connections.items()):
            if now - connection.last_activity <= timeout:
                continue
            del self.active_connections[peer_id]
            if connection.retry_count < self.reconnect_attempts:
                connection.retry_count += 1
                connection.status = ConnectionStatus.CONNECTING
                self.connection_pool[peer_id] = connection
                _log.info("Moved connection %s to retry pool", peer_id)
            else:
                _log.warning("Removed timed out connection: %s", peer_id)

    def connection_stats(self) -> tuple[int, int, int, int]:
        """(active count, pool count, total bytes sent, total bytes received)."""
        sent = sum(c.bytes_sent for c in self.active_connections.values())
        received = sum(c.bytes_received for c in self.active_connections.values())
        return len(self.active_connections), len(self.connection_pool), sent, received

    def update_connection_activity(
        self, peer_id: str, bytes_sent: int, bytes_received: int
    ) -> None:
        """Add traffic to an active connection and mark it as recently used."""
        connection = self.active_connections.get(peer_id)
        if connection is None:
            return
        connection.last_activity = self._now()
        connection.bytes_sent += bytes_sent
        connection.bytes_received += bytes_received