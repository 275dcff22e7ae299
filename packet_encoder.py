#!/usr/bin/env python3
"""
Binary packet encoding for the collectd network protocol.

Every value write produces a run of parts, each framed as

    uint16 part type | uint16 part length (including this header) | payload

in network byte order:

- HOST, PLUGIN, PLUGIN_INSTANCE, TYPE, TYPE_INSTANCE: null-terminated ASCII
- TIME/INTERVAL (or their high-resolution variants): uint64
- VALUES: uint16 count, count data-type bytes, then count 8-byte values.
  Gauges are IEEE-754 doubles in little-endian order, the one exception to
  network byte order in the protocol.

All header parts are written in front of every VALUES part, so each value
write is self-contained and can be placed in any datagram.

Typical usage:
    from packet_encoder import PacketEncoder, PacketDecoder, MetricObservation

    encoder = PacketEncoder()
    observation = MetricObservation("app.query", [("count", 5), ("max", 120.0)])
    for chunk in encoder.encode_observation(header, observation):
        transport.write(chunk)

    for value_list in PacketDecoder.decode_value_lists(datagram):
        print(value_list["plugin"], value_list["type_instance"], value_list["values"])
"""

import struct
import logging
from typing import Dict, List, Tuple, Any, Optional, Sequence, NamedTuple

from encryption import PacketSecurity
from packet_header import PacketHeader
from sanitize import MAX_NAME_LENGTH

__version__ = '1.0.0'
__all__ = ['PacketEncoder', 'PacketDecoder', 'MetricObservation', 'Part', 'ProtocolError']

logger = logging.getLogger("CollectdReporter.Encoder")

# Part types
TYPE_HOST = 0x0000
TYPE_TIME = 0x0001
TYPE_PLUGIN = 0x0002
TYPE_PLUGIN_INSTANCE = 0x0003
TYPE_TYPE = 0x0004
TYPE_TYPE_INSTANCE = 0x0005
TYPE_VALUES = 0x0006
TYPE_INTERVAL = 0x0007
TYPE_TIME_HR = 0x0008
TYPE_INTERVAL_HR = 0x0009

# Data source types used in VALUES parts
DS_TYPE_COUNTER = 0
DS_TYPE_GAUGE = 1
DS_TYPE_DERIVE = 2
DS_TYPE_ABSOLUTE = 3

HEADER_LEN = 4
NUMBER_LEN = HEADER_LEN + 8
VALUE_LEN = 9
MAX_PART_LEN = 0xFFFF
HOST_MAX_LENGTH = 127

# High-resolution times count units of 2^-30 seconds
HR_TIME_SHIFT = 30

STRING_PARTS = {
    TYPE_HOST: 'host',
    TYPE_PLUGIN: 'plugin',
    TYPE_PLUGIN_INSTANCE: 'plugin_instance',
    TYPE_TYPE: 'type',
    TYPE_TYPE_INSTANCE: 'type_instance',
}
NUMBER_PARTS = {
    TYPE_TIME: 'time',
    TYPE_INTERVAL: 'interval',
    TYPE_TIME_HR: 'time',
    TYPE_INTERVAL_HR: 'interval',
}


class ProtocolError(Exception):
    """Raised when header state or values cannot be encoded as collectd parts."""
    pass


class MetricObservation(NamedTuple):
    """One metric with its labelled values, e.g. ("app.query", [("count", 5)])."""
    name: str
    values: Sequence[Tuple[str, Any]]


class Part(NamedTuple):
    """A decoded part."""
    part_type: int
    value: Any


class PacketEncoder:
    """
    Serializes metric observations into collectd parts.

    The encoder produces plain parts. The security transform is applied per
    datagram through seal(), once the transport has assembled a full packet.
    """

    def __init__(self, security: Optional[PacketSecurity] = None, high_resolution_time: bool = False):
        """
        Initialize the encoder.

        Args:
            security (PacketSecurity, optional): Transform applied by seal().
                None sends packets in plain text.
            high_resolution_time (bool): Emit TIME_HR/INTERVAL_HR instead of
                TIME/INTERVAL
        """
        self.security = security
        self.high_resolution_time = high_resolution_time
        self.values_encoded = 0

    @property
    def overhead(self) -> int:
        """Bytes added to each datagram by seal()."""
        return self.security.overhead if self.security else 0

    def seal(self, packet: bytes) -> bytes:
        """Apply the security transform to one assembled datagram."""
        if self.security is None:
            return packet
        return self.security.seal(packet)

    def encode_observation(self, header: PacketHeader, observation: MetricObservation) -> List[bytes]:
        """
        Encode an observation as one value write per labelled value.

        The header's type instance is set to each label in turn.

        Args:
            header (PacketHeader): Header pointing at the observation's plugin
            observation (MetricObservation): Values to encode

        Returns:
            list: Encoded value writes, in observation order

        Raises:
            ProtocolError: If the header is incomplete or a value is not numeric
        """
        chunks = []
        for label, value in observation.values:
            header.type_instance = label
            chunks.append(self.encode_values(header, [value]))
        logger.debug(f"Encoded {len(chunks)} value writes for {observation.name}")
        return chunks

    def encode_values(self, header: PacketHeader, values: Sequence[Any]) -> bytes:
        """
        Encode the header parts followed by one VALUES part of gauges.

        Raises:
            ProtocolError: If the header is incomplete or a value is not numeric
        """
        for field in ('host', 'plugin', 'type'):
            if not getattr(header, field):
                raise ProtocolError(f"Required header field '{field}' is not set")
        if not values:
            raise ProtocolError("No values to encode")

        if self.high_resolution_time:
            time_part = self._number_part(TYPE_TIME_HR, header.timestamp << HR_TIME_SHIFT)
            interval_part = self._number_part(TYPE_INTERVAL_HR, header.interval << HR_TIME_SHIFT)
        else:
            time_part = self._number_part(TYPE_TIME, header.timestamp)
            interval_part = self._number_part(TYPE_INTERVAL, header.interval)

        encoded = b''.join([
            self._string_part(TYPE_HOST, header.host, HOST_MAX_LENGTH),
            time_part,
            self._string_part(TYPE_PLUGIN, header.plugin),
            self._string_part(TYPE_PLUGIN_INSTANCE, header.plugin_instance),
            self._string_part(TYPE_TYPE, header.type),
            self._string_part(TYPE_TYPE_INSTANCE, header.type_instance),
            interval_part,
            self._values_part(values),
        ])
        self.values_encoded += len(values)
        return encoded

    def _string_part(self, part_type: int, value: Optional[str], limit: int = MAX_NAME_LENGTH) -> bytes:
        if not value:
            return b''
        try:
            data = value.encode('ascii')
        except UnicodeEncodeError:
            raise ProtocolError(f"{STRING_PARTS[part_type]} is not ASCII: {value!r}") from None
        if b'\0' in data or (part_type != TYPE_HOST and b'/' in data):
            raise ProtocolError(f"{STRING_PARTS[part_type]} contains a reserved character: {value!r}")
        if len(data) > limit:
            raise ProtocolError(f"{STRING_PARTS[part_type]} longer than {limit} bytes: {value!r}")
        return struct.pack('>HH', part_type, HEADER_LEN + len(data) + 1) + data + b'\0'

    def _number_part(self, part_type: int, value: int) -> bytes:
        try:
            return struct.pack('>HHQ', part_type, NUMBER_LEN, value)
        except struct.error as e:
            raise ProtocolError(f"{NUMBER_PARTS[part_type]} out of range: {value}") from e

    def _values_part(self, values: Sequence[Any]) -> bytes:
        count = len(values)
        length = HEADER_LEN + 2 + count * VALUE_LEN
        if length > MAX_PART_LEN:
            raise ProtocolError(f"Too many values for one part: {count}")
        try:
            gauges = [float(value) for value in values]
        except (TypeError, ValueError, OverflowError) as e:
            raise ProtocolError(f"Value is not numeric: {e}") from e
        return (struct.pack('>HHH', TYPE_VALUES, length, count)
                + bytes([DS_TYPE_GAUGE]) * count
                + struct.pack(f'<{count}d', *gauges))


class PacketDecoder:
    """Parses plain collectd datagrams back into parts."""

    @staticmethod
    def decode(data: bytes) -> List[Part]:
        """
        Split a plain datagram into parts.

        String parts decode to str, time parts to seconds (float for the
        high-resolution variants) and VALUES to a list of (data type, value).
        Unknown parts are returned as raw payload bytes.

        Raises:
            ProtocolError: If a part is truncated or malformed
        """
        parts = []
        offset = 0
        while offset < len(data):
            if len(data) - offset < HEADER_LEN:
                raise ProtocolError(f"Truncated part header at offset {offset}")
            part_type, length = struct.unpack_from('>HH', data, offset)
            if length < HEADER_LEN or offset + length > len(data):
                raise ProtocolError(f"Invalid part length {length} at offset {offset}")
            payload = data[offset + HEADER_LEN:offset + length]
            parts.append(Part(part_type, PacketDecoder._decode_payload(part_type, payload)))
            offset += length
        return parts

    @staticmethod
    def decode_value_lists(data: bytes) -> List[Dict[str, Any]]:
        """
        Rebuild the value lists carried by a plain datagram.

        Header parts update the running state the way a collectd receiver
        does, and every VALUES part yields one dict holding the current header
        fields plus a 'values' list.
        """
        state: Dict[str, Any] = {}
        value_lists = []
        for part in PacketDecoder.decode(data):
            if part.part_type in STRING_PARTS:
                state[STRING_PARTS[part.part_type]] = part.value
            elif part.part_type in NUMBER_PARTS:
                state[NUMBER_PARTS[part.part_type]] = part.value
            elif part.part_type == TYPE_VALUES:
                value_lists.append(dict(state, values=[value for _, value in part.value]))
        return value_lists

    @staticmethod
    def _decode_payload(part_type: int, payload: bytes) -> Any:
        if part_type in STRING_PARTS:
            if not payload.endswith(b'\0'):
                raise ProtocolError(f"Unterminated string in part type {part_type:#06x}")
            return payload[:-1].decode('ascii')
        if part_type in NUMBER_PARTS:
            if len(payload) != 8:
                raise ProtocolError(f"Invalid number length in part type {part_type:#06x}")
            (number,) = struct.unpack('>Q', payload)
            if part_type in (TYPE_TIME_HR, TYPE_INTERVAL_HR):
                return number / (1 << HR_TIME_SHIFT)
            return number
        if part_type == TYPE_VALUES:
            return PacketDecoder._decode_values(payload)
        return payload

    @staticmethod
    def _decode_values(payload: bytes) -> List[Tuple[int, Any]]:
        if len(payload) < 2:
            raise ProtocolError("Truncated values part")
        (count,) = struct.unpack_from('>H', payload)
        if len(payload) != 2 + count * VALUE_LEN:
            raise ProtocolError(f"Values part length does not match count {count}")
        types = payload[2:2 + count]
        values = []
        offset = 2 + count
        for ds_type in types:
            raw = payload[offset:offset + 8]
            if ds_type == DS_TYPE_GAUGE:
                (value,) = struct.unpack('<d', raw)
            elif ds_type == DS_TYPE_DERIVE:
                (value,) = struct.unpack('>q', raw)
            else:
                (value,) = struct.unpack('>Q', raw)
            values.append((ds_type, value))
            offset += 8
        return values
