import socket
import unittest
from unittest import mock
from collectd_reporter import CollectdReporter, resolve_host_name
from config import ReporterConfig, ConfigurationError
from encryption import PacketSecurity, SecurityContext, SecurityLevel
from metrics import MetricsSnapshot, TimedMetric, QueryMetric, CountMetric, MetricsRegistry
from packet_encoder import PacketEncoder, PacketDecoder, ProtocolError
from transport import DatagramTransport, TransportConnectionError

NOW = 1700000000.0

class StaticSource:
    def __init__(self, snapshot):
        self._snapshot = snapshot

    def snapshot(self):
        return self._snapshot

class FailingSource:
    def snapshot(self):
        raise RuntimeError("metrics unavailable")

class CapturingSocket:
    def __init__(self):
        self.datagrams = []
        self.closed = False

    def sendto(self, data, address):
        self.datagrams.append(data)
        return len(data)

    def fileno(self):
        return -1 if self.closed else 3

    def close(self):
        self.closed = True

class CapturingTransport(DatagramTransport):
    """Transport that records datagrams instead of touching the network."""

    def __init__(self, max_datagram_size=1024, sealer=None, fail_connect=False, fail_disconnect=False):
        super().__init__('collectd.test', 25826, max_datagram_size=max_datagram_size, sealer=sealer)
        self.fail_connect = fail_connect
        self.fail_disconnect = fail_disconnect
        self.sockets = []
        self.disconnects = 0

    @property
    def datagrams(self):
        return [datagram for sock in self.sockets for datagram in sock.datagrams]

    def connect(self):
        if self.fail_connect:
            raise TransportConnectionError("Cannot resolve collectd.test")
        if self.is_connected():
            raise TransportConnectionError("Already connected")
        self.address = ('192.0.2.1', self.port)
        self.sock = CapturingSocket()
        self.sockets.append(self.sock)

    def disconnect(self, strict=False):
        self.disconnects += 1
        if self.fail_disconnect:
            raise OSError("close failed")
        super().disconnect(strict)

class FailingEncoder(PacketEncoder):
    """Raises for one metric name."""

    def __init__(self, fail_on, error=ProtocolError, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self.error = error

    def encode_observation(self, header, observation):
        if observation.name == self.fail_on:
            raise self.error(f"cannot encode {observation.name}")
        return super().encode_observation(header, observation)

def value_lists(datagrams):
    return [vl for datagram in datagrams for vl in PacketDecoder.decode_value_lists(datagram)]

class TestCollectdReporter(unittest.TestCase):
    def setUp(self):
        self.config = ReporterConfig(collectd_host='collectd.test', host_name='h1', clock=lambda: NOW)

    def build(self, snapshot, config=None, **kwargs):
        config = config or self.config
        encoder = kwargs.pop('encoder', None) or PacketEncoder(PacketSecurity(config.security_context()))
        transport = CapturingTransport(sealer=encoder, **kwargs)
        return CollectdReporter(config, StaticSource(snapshot), transport=transport, encoder=encoder)

    def test_timed_metric_end_to_end(self):
        snapshot = MetricsSnapshot(timed_metrics=[TimedMetric("app.query", 5, 120.0, 40.0, 200.0)])
        reporter = self.build(snapshot)
        reporter.report(60)

        lists = value_lists(reporter.transport.datagrams)
        self.assertEqual([vl['type_instance'] for vl in lists], ["count", "max", "mean", "total"])
        self.assertEqual([vl['values'] for vl in lists], [[5.0], [120.0], [40.0], [200.0]])
        for vl in lists:
            self.assertEqual(vl['host'], "h1")
            self.assertEqual(vl['plugin'], "app.query")
            self.assertEqual(vl['type'], "gauge")
            self.assertEqual(vl['time'], 1700000000)
            self.assertEqual(vl['interval'], 60)
        self.assertEqual(len(reporter.transport.datagrams), 1)
        self.assertFalse(reporter.transport.is_connected())

    def test_query_and_count_metrics(self):
        snapshot = MetricsSnapshot(
            query_metrics=[QueryMetric("findCustomer", "SqlQuery", 3, 9.0, 4.0, 12.0)],
            count_metrics=[CountMetric("cache.miss", 7)],
        )
        reporter = self.build(snapshot)
        reporter.report(30)

        lists = value_lists(reporter.transport.datagrams)
        self.assertEqual([(vl['plugin'], vl['type_instance']) for vl in lists], [
            ("db.query.SqlQuery.findCustomer", "count"),
            ("db.query.SqlQuery.findCustomer", "max"),
            ("db.query.SqlQuery.findCustomer", "mean"),
            ("db.query.SqlQuery.findCustomer", "total"),
            ("cache.miss", "count"),
        ])
        self.assertEqual(lists[-1]['values'], [7.0])

    def test_custom_query_prefix(self):
        config = self.config._replace(prefix_query="orm.")
        snapshot = MetricsSnapshot(query_metrics=[QueryMetric("byId", "OrmQuery", 1, 1.0, 1.0, 1.0)])
        reporter = self.build(snapshot, config=config)
        reporter.report(60)
        self.assertEqual(value_lists(reporter.transport.datagrams)[0]['plugin'], "orm.OrmQuery.byId")

    def test_unnamed_query_metric_skipped(self):
        snapshot = MetricsSnapshot(query_metrics=[
            QueryMetric("findCustomer", "SqlQuery", 3, 9.0, 4.0, 12.0),
            QueryMetric(None, "SqlQuery", 0, 0.0, 0.0, 0.0),
        ])
        reporter = self.build(snapshot)
        reporter.report(60)

        lists = value_lists(reporter.transport.datagrams)
        self.assertEqual(len(lists), 4)
        self.assertEqual({vl['plugin'] for vl in lists}, {"db.query.SqlQuery.findCustomer"})
        self.assertEqual(reporter.metrics_failed, 0)

    def test_failing_metric_does_not_suppress_others(self):
        snapshot = MetricsSnapshot(count_metrics=[
            CountMetric("first", 1), CountMetric("second", 2), CountMetric("third", 3),
        ])
        encoder = FailingEncoder("second", security=PacketSecurity(SecurityContext()))
        reporter = self.build(snapshot, encoder=encoder)
        with self.assertLogs("CollectdReporter", level="WARNING") as logs:
            reporter.report(60)

        lists = value_lists(reporter.transport.datagrams)
        self.assertEqual([vl['plugin'] for vl in lists], ["first", "third"])
        self.assertEqual(reporter.metrics_failed, 1)
        self.assertTrue(any("'second'" in line for line in logs.output))

    def test_non_numeric_value_isolated(self):
        snapshot = MetricsSnapshot(count_metrics=[CountMetric("bad", "many"), CountMetric("good", 1)])
        reporter = self.build(snapshot)
        reporter.report(60)
        self.assertEqual([vl['plugin'] for vl in value_lists(reporter.transport.datagrams)], ["good"])

    def test_overflowing_count_isolated(self):
        snapshot = MetricsSnapshot(count_metrics=[
            CountMetric("a", 1), CountMetric("b", 10 ** 400), CountMetric("c", 3),
        ])
        reporter = self.build(snapshot)
        reporter.report(60)

        self.assertEqual([vl['plugin'] for vl in value_lists(reporter.transport.datagrams)], ["a", "c"])
        self.assertEqual(reporter.metrics_failed, 1)
        self.assertEqual(reporter.cycles_failed, 0)

    def test_unexpected_encoder_error_isolated(self):
        snapshot = MetricsSnapshot(count_metrics=[
            CountMetric("first", 1), CountMetric("second", 2), CountMetric("third", 3),
        ])
        encoder = FailingEncoder("second", error=RuntimeError, security=PacketSecurity(SecurityContext()))
        reporter = self.build(snapshot, encoder=encoder)
        with self.assertLogs("CollectdReporter", level="WARNING") as logs:
            reporter.report(60)

        self.assertEqual([vl['plugin'] for vl in value_lists(reporter.transport.datagrams)], ["first", "third"])
        self.assertEqual(reporter.metrics_failed, 1)
        self.assertEqual(reporter.cycles_failed, 0)
        self.assertTrue(any("'second'" in line for line in logs.output))

    def test_many_metrics_span_datagrams(self):
        config = self.config._replace(max_datagram_size=256)
        snapshot = MetricsSnapshot(count_metrics=[CountMetric(f"counter.{i}", i) for i in range(20)])
        reporter = self.build(snapshot, config=config, max_datagram_size=256)
        reporter.report(60)

        datagrams = reporter.transport.datagrams
        self.assertGreater(len(datagrams), 1)
        for datagram in datagrams:
            self.assertLessEqual(len(datagram), 256)
        self.assertEqual([vl['plugin'] for vl in value_lists(datagrams)],
                         [f"counter.{i}" for i in range(20)])

    def test_connect_failure_is_contained(self):
        snapshot = MetricsSnapshot(count_metrics=[CountMetric("c", 1)])
        reporter = self.build(snapshot, fail_connect=True)
        reporter.report(60)
        self.assertEqual(reporter.transport.datagrams, [])
        self.assertEqual(reporter.cycles_failed, 1)
        self.assertEqual(reporter.transport.disconnects, 1)

    def test_source_failure_is_contained(self):
        transport = CapturingTransport()
        reporter = CollectdReporter(self.config, FailingSource(), transport=transport)
        reporter.report(60)
        self.assertEqual(reporter.cycles_failed, 1)
        self.assertEqual(transport.disconnects, 1)
        self.assertFalse(transport.is_connected())

    def test_disconnect_failure_is_swallowed(self):
        snapshot = MetricsSnapshot(count_metrics=[CountMetric("c", 1)])
        reporter = self.build(snapshot, fail_disconnect=True)
        reporter.report(60)
        self.assertEqual(len(reporter.transport.datagrams), 1)

    def test_cycles_start_fresh(self):
        snapshot = MetricsSnapshot(count_metrics=[CountMetric("c", 1)])
        reporter = self.build(snapshot)
        reporter.report(60)
        reporter.report(60)
        self.assertEqual(len(reporter.transport.sockets), 2)
        self.assertEqual(reporter.get_stats()['cycles_run'], 2)

    def test_report_runnable_uses_period_as_interval(self):
        snapshot = MetricsSnapshot(count_metrics=[CountMetric("c", 1)])
        reporter = self.build(snapshot)
        reporter.report_runnable(15)()
        self.assertEqual(value_lists(reporter.transport.datagrams)[0]['interval'], 15)

    def test_signed_datagrams_verify(self):
        config = self.config._replace(security_level=SecurityLevel.SIGN, username="user0", password="secret")
        snapshot = MetricsSnapshot(timed_metrics=[TimedMetric("app.query", 5, 120.0, 40.0, 200.0)])
        reporter = self.build(snapshot, config=config)
        reporter.report(60)

        security = PacketSecurity(config.security_context())
        datagrams = reporter.transport.datagrams
        self.assertEqual(len(datagrams), 1)
        lists = PacketDecoder.decode_value_lists(security.verify(datagrams[0]))
        self.assertEqual([vl['type_instance'] for vl in lists], ["count", "max", "mean", "total"])
        self.assertEqual(reporter.get_stats()['security']['packets_signed'], 1)

    def test_encrypted_datagrams_decrypt(self):
        config = self.config._replace(security_level=SecurityLevel.ENCRYPT, username="user0",
                                      password="secret", max_datagram_size=256)
        snapshot = MetricsSnapshot(count_metrics=[CountMetric(f"counter.{i}", i) for i in range(10)])
        reporter = self.build(snapshot, config=config, max_datagram_size=256)
        reporter.report(60)

        security = PacketSecurity(config.security_context())
        datagrams = reporter.transport.datagrams
        self.assertGreater(len(datagrams), 1)
        plugins = []
        for datagram in datagrams:
            self.assertLessEqual(len(datagram), 256)
            plugins.extend(vl['plugin'] for vl in PacketDecoder.decode_value_lists(security.decrypt(datagram)))
        self.assertEqual(plugins, [f"counter.{i}" for i in range(10)])

    def test_missing_credentials_prevent_construction(self):
        config = self.config._replace(security_level=SecurityLevel.ENCRYPT, username="user0")
        with self.assertRaises(ConfigurationError):
            CollectdReporter(config, StaticSource(MetricsSnapshot()))

    def test_host_name_resolution_fallback(self):
        with mock.patch('collectd_reporter.socket.gethostname', side_effect=OSError("lookup failed")):
            self.assertEqual(resolve_host_name(), "localhost")
            reporter = CollectdReporter(self.config._replace(host_name=None), StaticSource(MetricsSnapshot()))
        self.assertEqual(reporter.host_name, "localhost")

    def test_unsendable_local_host_name_falls_back(self):
        for local_name in ("hôte", "a\0b", "h" * 128):
            with mock.patch('collectd_reporter.socket.gethostname', return_value=local_name):
                with self.assertLogs("CollectdReporter", level="WARNING"):
                    reporter = CollectdReporter(self.config._replace(host_name=None),
                                                StaticSource(MetricsSnapshot()))
            self.assertEqual(reporter.host_name, "localhost")

    def test_non_ascii_host_name_prevents_construction(self):
        with self.assertRaises(ConfigurationError):
            CollectdReporter(self.config._replace(host_name="hôte"), StaticSource(MetricsSnapshot()))

class TestCollectdReporterLoopback(unittest.TestCase):
    def setUp(self):
        self.receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.receiver.bind(('127.0.0.1', 0))
        self.receiver.settimeout(2.0)
        self.port = self.receiver.getsockname()[1]

    def tearDown(self):
        self.receiver.close()

    def test_registry_metrics_reach_receiver(self):
        registry = MetricsRegistry()
        registry.record_timed("txn.commit", 100)
        registry.record_timed("txn.commit", 300)
        registry.record_query(None, "SqlQuery", 5)
        registry.increment("cache.miss", 2)

        config = ReporterConfig(collectd_host='127.0.0.1', collectd_port=self.port, host_name='h1',
                                security_level=SecurityLevel.ENCRYPT, username='user0', password='secret',
                                clock=lambda: NOW)
        reporter = CollectdReporter(config, registry)
        reporter.report(60)

        datagram = self.receiver.recv(65535)
        payload = PacketSecurity(config.security_context()).decrypt(datagram)
        lists = PacketDecoder.decode_value_lists(payload)
        self.assertEqual([(vl['plugin'], vl['type_instance'], vl['values'][0]) for vl in lists], [
            ("txn.commit", "count", 2.0),
            ("txn.commit", "max", 300.0),
            ("txn.commit", "mean", 200.0),
            ("txn.commit", "total", 400.0),
            ("cache.miss", "count", 2.0),
        ])
        self.assertEqual(reporter.transport.get_stats()['datagrams_sent'], 1)

if __name__ == '__main__':
    unittest.main()
