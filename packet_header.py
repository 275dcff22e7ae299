#!/usr/bin/env python3
"""
Packet header state for the collectd reporter.

A PacketHeader carries the identifying fields (host, time, interval, plugin,
plugin instance, type, type instance) written in front of every value block.
One header is created per report cycle and updated as the cycle moves from
metric to metric.

Typical usage:
    from packet_header import PacketHeader

    header = PacketHeader("web-01", timestamp=1700000000, interval=60)
    header.plugin = "app.query"
    header.type_instance = "count"
"""

from typing import Optional

from sanitize import sanitize_name, sanitize_instance_name

__version__ = '1.0.0'
__all__ = ['PacketHeader', 'TYPE_GAUGE']

TYPE_GAUGE = 'gauge'


class PacketHeader:
    """
    Mutable header fields shared by consecutive value writes.

    Names assigned to plugin, type and the instance fields are sanitized on
    assignment so that the encoder only ever sees protocol-safe strings. The
    host name is taken as given.
    """

    def __init__(self, host: str, timestamp: int, interval: int):
        """
        Initialize the header.

        Args:
            host (str): Host name label reported to collectd
            timestamp (int): Epoch seconds of the observation
            interval (int): Reporting interval in seconds
        """
        self.host = host
        self.timestamp = int(timestamp)
        self.interval = int(interval)
        self._plugin: Optional[str] = None
        self._plugin_instance: Optional[str] = None
        self._type: Optional[str] = TYPE_GAUGE
        self._type_instance: Optional[str] = None

    @property
    def plugin(self) -> Optional[str]:
        return self._plugin

    @plugin.setter
    def plugin(self, name: Optional[str]) -> None:
        self._plugin = None if name is None else sanitize_name(name)

    @property
    def plugin_instance(self) -> Optional[str]:
        return self._plugin_instance

    @plugin_instance.setter
    def plugin_instance(self, name: Optional[str]) -> None:
        self._plugin_instance = None if name is None else sanitize_instance_name(name)

    @property
    def type(self) -> Optional[str]:
        return self._type

    @type.setter
    def type(self, name: Optional[str]) -> None:
        self._type = None if name is None else sanitize_name(name)

    @property
    def type_instance(self) -> Optional[str]:
        return self._type_instance

    @type_instance.setter
    def type_instance(self, name: Optional[str]) -> None:
        self._type_instance = None if name is None else sanitize_instance_name(name)

    def for_metric(self, plugin: str, plugin_instance: Optional[str] = None) -> 'PacketHeader':
        """
        Point the header at a new metric.

        Resets the type instance so a stale label from the previous metric is
        never written under the new plugin.

        Returns:
            PacketHeader: self, for chaining
        """
        self.plugin = plugin
        self.plugin_instance = plugin_instance
        self._type_instance = None
        return self

    def __repr__(self) -> str:
        return (f"PacketHeader(host={self.host!r}, timestamp={self.timestamp}, "
                f"interval={self.interval}, plugin={self.plugin!r}, "
                f"plugin_instance={self.plugin_instance!r}, type={self.type!r}, "
                f"type_instance={self.type_instance!r})")
