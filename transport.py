#!/usr/bin/env python3
"""
UDP datagram transport for the collectd reporter.

The transport owns one UDP socket aimed at a fixed collectd destination. Encoded
value writes are buffered and sent as datagrams no larger than the configured
maximum size. A value write is never split across two datagrams: when the next
write does not fit, the current buffer is sent first.

Each datagram passes through an optional sealer (anything with a seal(bytes)
method and an overhead attribute, such as PacketEncoder) just before it is
sent, so signing or encryption always covers exactly one datagram.

Typical usage:
    from transport import DatagramTransport

    with DatagramTransport("collectd.example.com", 25826, sealer=encoder) as transport:
        for chunk in chunks:
            transport.write(chunk)
"""

import socket
import logging
from typing import Dict, Any, Optional, Tuple

__version__ = '1.0.0'
__all__ = ['DatagramTransport', 'TransportError', 'TransportConnectionError', 'DisconnectError',
           'DEFAULT_PORT', 'DEFAULT_MAX_DATAGRAM_SIZE']

logger = logging.getLogger("CollectdReporter.Transport")

DEFAULT_PORT = 25826
DEFAULT_MAX_DATAGRAM_SIZE = 1024
LOOPBACK_ADDRESS = '127.0.0.1'


class TransportError(Exception):
    """Raised when buffered data cannot be sent."""
    pass


class TransportConnectionError(TransportError, ConnectionError):
    """Raised when the transport cannot be connected."""
    pass


class DisconnectError(TransportError):
    """Raised by a strict disconnect when the socket fails to close."""
    pass


class DatagramTransport:
    """Buffers encoded parts and sends them as size-bounded UDP datagrams."""

    def __init__(self, host: Optional[str], port: int = DEFAULT_PORT,
                 max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE, sealer: Any = None):
        """
        Initialize the transport.

        Args:
            host (str, optional): collectd host name or address. None sends to
                the IPv4 loopback address without any name resolution.
            port (int): collectd UDP port
            max_datagram_size (int): Upper bound for each sent datagram in bytes
            sealer (optional): Object with seal(bytes) -> bytes and an overhead
                attribute, applied to every datagram before sending
        """
        self.host = host
        self.port = port
        self.max_datagram_size = max_datagram_size
        self.sealer = sealer

        self.address: Optional[Tuple[Any, ...]] = None
        self.sock: Optional[socket.socket] = None
        self._buffer = bytearray()

        # Track statistics
        self.datagrams_sent = 0
        self.bytes_sent = 0
        self.send_errors = 0

    @property
    def payload_limit(self) -> int:
        """Plain bytes that fit in one datagram once sealed."""
        overhead = self.sealer.overhead if self.sealer is not None else 0
        return self.max_datagram_size - overhead

    @property
    def buffered(self) -> int:
        """Number of plain bytes waiting to be sent."""
        return len(self._buffer)

    def connect(self) -> None:
        """
        Resolve the destination and open the UDP socket.

        Raises:
            TransportConnectionError: If already connected, or if resolution
                or socket creation fails
        """
        if self.is_connected():
            raise TransportConnectionError("Already connected")

        try:
            if self.host is None:
                family = socket.AF_INET
                self.address = (LOOPBACK_ADDRESS, self.port)
            else:
                family, _, _, _, self.address = socket.getaddrinfo(
                    self.host, self.port, type=socket.SOCK_DGRAM)[0]
            self.sock = socket.socket(family, socket.SOCK_DGRAM)
        except (OSError, UnicodeError) as e:
            self.address = None
            logger.error(f"Error connecting to collectd at {self.host}:{self.port}: {e}")
            raise TransportConnectionError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

        self._buffer.clear()
        logger.info(f"Connected to collectd at {self.address[0]}:{self.address[1]}")

    def is_connected(self) -> bool:
        return self.sock is not None and self.sock.fileno() != -1

    def write(self, data: bytes) -> None:
        """
        Append one encoded value write to the current datagram.

        If the data does not fit in the space left, the buffered datagram is
        sent first and the data starts a new one.

        Raises:
            TransportError: If not connected, if the data can never fit in a
                datagram, or if sending the previous datagram fails
        """
        if not self.is_connected():
            raise TransportError("Not connected")
        limit = self.payload_limit
        if len(data) > limit:
            raise TransportError(f"Part of {len(data)} bytes exceeds datagram payload limit of {limit} bytes")
        if len(self._buffer) + len(data) > limit:
            self._send_buffer()
        self._buffer.extend(data)

    def flush(self) -> None:
        """
        Send any buffered bytes as a final datagram.

        Raises:
            TransportError: If sending fails
        """
        if not self._buffer:
            return
        if not self.is_connected():
            raise TransportError("Not connected")
        self._send_buffer()

    def disconnect(self, strict: bool = False) -> None:
        """
        Close the socket. Safe to call repeatedly.

        Unsent buffered bytes are discarded. Close failures are logged and,
        unless strict is set, not raised.

        Raises:
            DisconnectError: If strict and closing the socket fails
        """
        if self._buffer:
            logger.debug(f"Discarding {len(self._buffer)} unsent bytes")
            self._buffer.clear()
        if self.sock is None:
            return

        sock, self.sock = self.sock, None
        try:
            sock.close()
        except OSError as e:
            logger.warning(f"Error closing UDP socket: {e}")
            if strict:
                raise DisconnectError(f"Error closing UDP socket: {e}") from e
            return
        logger.info("Disconnected from collectd")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get transport statistics.

        Returns:
            dict: Dictionary with transport statistics
        """
        return {
            'connected': self.is_connected(),
            'datagrams_sent': self.datagrams_sent,
            'bytes_sent': self.bytes_sent,
            'send_errors': self.send_errors,
            'buffered_bytes': len(self._buffer)
        }

    def _send_buffer(self) -> None:
        # Cleared before sealing: a failed seal or send loses only this datagram.
        packet = bytes(self._buffer)
        self._buffer.clear()
        if self.sealer is not None:
            packet = self.sealer.seal(packet)
        try:
            sent = self.sock.sendto(packet, self.address)
        except OSError as e:
            self.send_errors += 1
            logger.error(f"UDP send error to {self.address}: {e}")
            raise TransportError(f"Failed to send datagram: {e}") from e

        self.datagrams_sent += 1
        self.bytes_sent += sent
        logger.debug(f"Sent {sent} bytes to {self.address[0]}:{self.address[1]} via UDP")

    def __enter__(self) -> 'DatagramTransport':
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        try:
            if exc_type is None:
                self.flush()
        finally:
            self.disconnect()
