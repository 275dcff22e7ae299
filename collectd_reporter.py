#!/usr/bin/env python3
"""
Reports database access metrics to a collectd server.

Each report cycle takes a snapshot from the metric source, encodes every
metric as collectd gauges and sends them over UDP using the collectd binary
network protocol, optionally signed or encrypted:

- timed metrics become plugin <name> with type instances count/max/mean/total
- query metrics become plugin <prefix><type label>.<name> with the same four
  type instances; query metrics without a name are skipped
- count metrics become plugin <name> with type instance count

A cycle never raises. Connection failures end the cycle, a failure on one
metric is logged and the remaining metrics are still sent, and the transport
is always disconnected at the end.

Typical usage:
    from collectd_reporter import CollectdReporter
    from config import ReporterConfig
    from encryption import SecurityLevel
    from metrics import MetricsRegistry

    registry = MetricsRegistry()
    config = ReporterConfig(collectd_host="collectd.example.com",
                            security_level=SecurityLevel.ENCRYPT,
                            username="user0", password="secret")

    reporter = CollectdReporter(config, registry)
    scheduler = reporter.report_every(60)
    ...
    scheduler.stop()
"""

import socket
import logging
from typing import Dict, Any, Optional, Callable, Iterator

from config import ReporterConfig, is_valid_host_name
from encryption import PacketSecurity, SecurityError
from packet_encoder import PacketEncoder, MetricObservation, ProtocolError
from packet_header import PacketHeader
from scheduler import ReportScheduler
from transport import DatagramTransport, TransportError, TransportConnectionError

__version__ = '1.0.0'
__all__ = ['CollectdReporter', 'resolve_host_name']

logger = logging.getLogger("CollectdReporter")

FALLBACK_HOST_NAME = 'localhost'


def resolve_host_name() -> str:
    """Return the local host name, or 'localhost' if it cannot be determined or sent."""
    try:
        host_name = socket.gethostname()
    except OSError as e:
        logger.error(f"Failed to look up local host name: {e}")
        return FALLBACK_HOST_NAME
    if not is_valid_host_name(host_name):
        logger.warning(f"Local host name {host_name!r} cannot be sent to collectd, using '{FALLBACK_HOST_NAME}'")
        return FALLBACK_HOST_NAME
    return host_name


class CollectdReporter:
    """
    Publishes metric source snapshots to collectd.

    The reporter owns its transport. Cycles must not overlap; use
    report_every() (or a ReportScheduler) to run them periodically.
    """

    def __init__(self, config: ReporterConfig, source: Any,
                 transport: Optional[DatagramTransport] = None,
                 encoder: Optional[PacketEncoder] = None):
        """
        Initialize the reporter.

        Args:
            config (ReporterConfig): Reporter configuration, validated here
            source: Metric source; any object with a snapshot() method
                returning a MetricsSnapshot
            transport (DatagramTransport, optional): Transport to use instead
                of one built from the configuration
            encoder (PacketEncoder, optional): Encoder to use instead of one
                built from the configuration

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = config.validate()
        self.source = source
        self.host_name = config.host_name or resolve_host_name()

        if encoder is None:
            encoder = PacketEncoder(PacketSecurity(config.security_context()),
                                    high_resolution_time=config.high_resolution_time)
        self.encoder = encoder

        if transport is None:
            transport = DatagramTransport(config.collectd_host, config.collectd_port,
                                          max_datagram_size=config.max_datagram_size,
                                          sealer=encoder)
        self.transport = transport

        # Track statistics
        self.cycles_run = 0
        self.cycles_failed = 0
        self.metrics_failed = 0

    def report(self, period: int) -> None:
        """
        Run one report cycle.

        Args:
            period (int): Reporting interval in seconds, sent as the interval
                of every value
        """
        logger.debug("Reporting metrics ...")
        self.cycles_run += 1
        try:
            header = PacketHeader(self.host_name, int(self.config.clock()), period)
            if not self.transport.is_connected():
                self.transport.connect()

            snapshot = self.source.snapshot()
            for observation in self._observations(snapshot):
                self._report_observation(header, observation)

            self.transport.flush()
        except TransportConnectionError as e:
            self.cycles_failed += 1
            logger.error(f"Cannot connect to collectd, skipping report: {e}")
        except Exception as e:
            self.cycles_failed += 1
            logger.warning(f"Error trying to send metrics to collectd: {e}", exc_info=True)
        finally:
            self._disconnect()

    def report_runnable(self, period: int) -> Callable[[], None]:
        """Return a zero-argument callable that runs one report cycle."""
        def run() -> None:
            self.report(period)
        return run

    def report_every(self, period: int) -> ReportScheduler:
        """
        Report every `period` seconds in the background.

        The first report runs after one period.

        Returns:
            ReportScheduler: The started scheduler; stop() it on shutdown
        """
        scheduler = ReportScheduler(self.report_runnable(period), period)
        scheduler.start()
        return scheduler

    def get_stats(self) -> Dict[str, Any]:
        """
        Get reporter statistics, including transport and security statistics.

        Returns:
            dict: Dictionary with reporter statistics
        """
        stats: Dict[str, Any] = {
            'cycles_run': self.cycles_run,
            'cycles_failed': self.cycles_failed,
            'metrics_failed': self.metrics_failed,
            'transport': self.transport.get_stats()
        }
        if self.encoder.security is not None:
            stats['security'] = self.encoder.security.get_stats()
        return stats

    def _observations(self, snapshot: Any) -> Iterator[MetricObservation]:
        for metric in snapshot.timed_metrics:
            yield self._timed_observation(metric.name, metric)
        for metric in snapshot.query_metrics:
            if metric.name is None:
                logger.debug(f"Skipping unnamed {metric.type_label} metric with count {metric.count}")
                continue
            name = f"{self.config.prefix_query}{metric.type_label}.{metric.name}"
            yield self._timed_observation(name, metric)
        for metric in snapshot.count_metrics:
            yield MetricObservation(metric.name, [('count', metric.count)])

    @staticmethod
    def _timed_observation(name: str, metric: Any) -> MetricObservation:
        return MetricObservation(name, [
            ('count', metric.count),
            ('max', metric.max),
            ('mean', metric.mean),
            ('total', metric.total),
        ])

    def _report_observation(self, header: PacketHeader, observation: MetricObservation) -> None:
        try:
            header.for_metric(observation.name)
            for chunk in self.encoder.encode_observation(header, observation):
                self.transport.write(chunk)
        except (ProtocolError, SecurityError) as e:
            self.metrics_failed += 1
            logger.warning(f"Failed to process metric '{observation.name}': {e}")
        except TransportError as e:
            self.metrics_failed += 1
            logger.error(f"Failed to send metric '{observation.name}' to collectd: {e}")
        except Exception as e:
            self.metrics_failed += 1
            logger.warning(f"Failed to process metric '{observation.name}': {e}", exc_info=True)

    def _disconnect(self) -> None:
        try:
            self.transport.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from collectd: {e}")


# Example usage
if __name__ == "__main__":
    import time
    from metrics import MetricsRegistry

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    registry = MetricsRegistry()
    for i in range(10):
        with registry.time_operation("txn.commit"):
            time.sleep(0.01)
        registry.record_query("findCustomer", "SqlQuery", 400 + i)
    registry.increment("cache.miss", 3)

    reporter = CollectdReporter(ReporterConfig(collectd_host="localhost"), registry)
    reporter.report(60)
    print(f"Reporter stats: {reporter.get_stats()}")
