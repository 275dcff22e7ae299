import socket
import unittest
from unittest import mock
from transport import DatagramTransport, TransportError, TransportConnectionError, DisconnectError

class PrefixSealer:
    """Stands in for PacketEncoder: prepends a fixed header to each datagram."""
    overhead = 36

    def __init__(self):
        self.sealed = 0

    def seal(self, packet):
        self.sealed += 1
        return b'S' * self.overhead + packet

class TestDatagramTransport(unittest.TestCase):
    def setUp(self):
        self.receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.receiver.bind(('127.0.0.1', 0))
        self.receiver.settimeout(2.0)
        self.port = self.receiver.getsockname()[1]

    def tearDown(self):
        self.receiver.close()

    def receive(self, count):
        return [self.receiver.recv(65535) for _ in range(count)]

    def test_connect_and_disconnect(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        self.assertFalse(transport.is_connected())
        transport.connect()
        self.assertTrue(transport.is_connected())
        transport.disconnect()
        self.assertFalse(transport.is_connected())
        transport.disconnect()

    def test_connect_twice_fails(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        transport.connect()
        try:
            with self.assertRaises(TransportConnectionError):
                transport.connect()
            self.assertTrue(transport.is_connected())
        finally:
            transport.disconnect()

    def test_unresolvable_host(self):
        transport = DatagramTransport('collectd.invalid', self.port)
        with mock.patch('transport.socket.getaddrinfo', side_effect=socket.gaierror("no such host")):
            with self.assertRaises(TransportConnectionError) as cm:
                transport.connect()
        self.assertIsInstance(cm.exception, ConnectionError)
        self.assertFalse(transport.is_connected())

    def test_no_host_sends_to_loopback(self):
        with DatagramTransport(None, self.port) as transport:
            transport.write(b'hello')
        self.assertEqual(self.receive(1), [b'hello'])

    def test_chunking_never_splits_parts(self):
        parts = [bytes([i]) * 100 for i in range(5)]
        transport = DatagramTransport('127.0.0.1', self.port, max_datagram_size=256)
        transport.connect()
        try:
            for part in parts:
                transport.write(part)
            transport.flush()
        finally:
            transport.disconnect()

        self.assertEqual(transport.datagrams_sent, 3)
        datagrams = self.receive(3)
        self.assertEqual([len(d) for d in datagrams], [200, 200, 100])
        self.assertEqual(b''.join(datagrams), b''.join(parts))
        for datagram in datagrams:
            self.assertLessEqual(len(datagram), 256)
            self.assertEqual(len(datagram) % 100, 0)

    def test_sealer_applied_per_datagram(self):
        sealer = PrefixSealer()
        transport = DatagramTransport('127.0.0.1', self.port, max_datagram_size=256, sealer=sealer)
        self.assertEqual(transport.payload_limit, 220)
        with transport:
            for i in range(3):
                transport.write(bytes([i]) * 100)

        self.assertEqual(sealer.sealed, 2)
        datagrams = self.receive(2)
        for datagram in datagrams:
            self.assertTrue(datagram.startswith(b'S' * 36))
            self.assertLessEqual(len(datagram), 256)
        self.assertEqual(len(datagrams[0]), 236)

    def test_part_larger_than_datagram(self):
        with DatagramTransport('127.0.0.1', self.port, max_datagram_size=64) as transport:
            with self.assertRaises(TransportError):
                transport.write(b'x' * 65)
            self.assertEqual(transport.buffered, 0)

    def test_write_when_disconnected(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        with self.assertRaises(TransportError):
            transport.write(b'data')

    def test_flush_empty_buffer_sends_nothing(self):
        with DatagramTransport('127.0.0.1', self.port) as transport:
            transport.flush()
        self.assertEqual(transport.datagrams_sent, 0)

    def broken_socket(self, transport, **side_effects):
        real = transport.sock
        self.addCleanup(real.close)
        fake = mock.Mock()
        fake.fileno.return_value = real.fileno()
        for name, error in side_effects.items():
            getattr(fake, name).side_effect = error
        transport.sock = fake
        return fake

    def test_send_failure_drops_datagram(self):
        transport = DatagramTransport('127.0.0.1', self.port, max_datagram_size=128)
        transport.connect()
        self.broken_socket(transport, sendto=OSError("network unreachable"))
        transport.write(b'a' * 100)
        with self.assertRaises(TransportError):
            transport.flush()
        self.assertEqual(transport.buffered, 0)
        self.assertEqual(transport.get_stats()['send_errors'], 1)
        transport.disconnect()

    def test_disconnect_swallows_close_errors(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        transport.connect()
        fake = self.broken_socket(transport, close=OSError("close failed"))
        transport.disconnect()
        fake.close.assert_called_once_with()
        self.assertIsNone(transport.sock)
        self.assertFalse(transport.is_connected())

    def test_strict_disconnect_raises(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        transport.connect()
        self.broken_socket(transport, close=OSError("close failed"))
        with self.assertRaises(DisconnectError):
            transport.disconnect(strict=True)

    def test_disconnect_discards_buffer(self):
        transport = DatagramTransport('127.0.0.1', self.port)
        transport.connect()
        transport.write(b'pending')
        transport.disconnect()
        self.assertEqual(transport.buffered, 0)
        self.assertEqual(transport.datagrams_sent, 0)

if __name__ == '__main__':
    unittest.main()
