"""Prometheus pull exporter using prometheus_client."""
from typing import Dict, Sequence
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, start_http_server
)
from prometheus_client.core import Metric
import logging

from cap.config import PrometheusExporterConfig
from cap.pipeline import LabelsLookup, MetadataLookup, PipelineStats
from cap.series import MetricMetadata, RefSample

logger = logging.getLogger(__name__)

# Metadata types mapped to prometheus_client family types
FAMILY_TYPES = {
    "counter": "counter",
    "gauge": "gauge",
    "untyped": "unknown",
}


class BatchCollector:
    """Collector that yields the families built from the latest batch."""

    def __init__(self):
        self._families: Sequence[Metric] = ()

    def update(self, families: Sequence[Metric]):
        # Reference swap; a concurrent collect() sees either the old or the new batch
        self._families = tuple(families)

    def collect(self):
        return iter(self._families)


class PrometheusExporter:
    """Re-exposes accepted samples on a local /metrics endpoint."""

    def __init__(self, config: PrometheusExporterConfig, start_server: bool = True):
        self.config = config
        # Use a custom registry to avoid exporting default Python/process metrics
        self.registry = CollectorRegistry()
        self.collector = BatchCollector()
        self.registry.register(self.collector)

        # Start HTTP server
        if start_server:
            self._start_server()

    def _start_server(self):
        """Start Prometheus HTTP server."""
        try:
            start_http_server(
                self.config.port,
                addr=self.config.bind_address,
                registry=self.registry
            )
            logger.info(
                f"Prometheus exporter listening on "
                f"{self.config.bind_address}:{self.config.port}/metrics"
            )
        except Exception as e:
            logger.error(f"Failed to start Prometheus HTTP server: {e}")
            raise

    def export(self, batch: Sequence[RefSample], metadata: MetadataLookup, labels: LabelsLookup):
        """Replace the exposed samples with ``batch``."""
        families: Dict[str, Metric] = {}

        for sample in batch:
            label_set = labels(sample.ref)
            if not label_set:
                logger.warning(f"No labels registered for series ref {sample.ref}, dropping sample")
                continue

            metric_name = label_set.metric_name
            family = families.get(metric_name)
            if family is None:
                family = self._family_for(metric_name, metadata(metric_name))
                families[metric_name] = family

            family.add_sample(
                metric_name,
                label_set.without_name(),
                sample.value,
                timestamp=sample.timestamp_ms / 1000.0
            )

        self.collector.update(list(families.values()))
        logger.debug(f"Prometheus exporter now exposes {len(families)} metric families")

    @staticmethod
    def _family_for(metric_name: str, meta) -> Metric:
        meta = meta or MetricMetadata(metric_name)
        family_type = FAMILY_TYPES.get(meta.type, "unknown")
        family_name = metric_name

        # The exposition writer appends _total to counter family names
        if family_type == "counter":
            if metric_name.endswith("_total"):
                family_name = metric_name[:-len("_total")]
            else:
                family_type = "unknown"

        return Metric(
            family_name,
            meta.help or f"Scraped metric: {metric_name}",
            family_type
        )

    def shutdown(self):
        """Nothing to release; the HTTP server thread is a daemon."""
        pass


class SelfMetrics:
    """Self-monitoring metrics for the scraper."""

    def __init__(self, registry=None, prefix="cap_"):
        if registry is None:
            registry = CollectorRegistry()

        self.cycles_total = Counter(
            f"{prefix}scrape_cycles_total",
            "Total number of scrape cycles attempted",
            registry=registry
        )

        self.failures_total = Counter(
            f"{prefix}scrape_failures_total",
            "Total number of failed cycle stages",
            ["stage"],
            registry=registry
        )

        self.samples_total = Counter(
            f"{prefix}scrape_samples_total",
            "Total number of scraped samples by outcome",
            ["outcome"],
            registry=registry
        )

        self.rejected_total = Counter(
            f"{prefix}scrape_rejected_total",
            "Total number of rejected samples by filter rule",
            ["reason"],
            registry=registry
        )

        self.cycle_duration_seconds = Histogram(
            f"{prefix}scrape_cycle_duration_seconds",
            "Duration of each scrape cycle in seconds",
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry
        )

        self.last_batch_size = Gauge(
            f"{prefix}scrape_last_batch_size",
            "Number of samples in the last exported batch",
            registry=registry
        )

    def record_cycle(self, duration: float):
        """Record a finished cycle."""
        self.cycles_total.inc()
        self.cycle_duration_seconds.observe(duration)

    def record_failure(self, stage: str):
        """Record a failed stage (fetch, parse or export)."""
        self.failures_total.labels(stage=stage).inc()

    def record_stats(self, stats: PipelineStats):
        """Record pipeline outcome counts."""
        self.samples_total.labels(outcome="accepted").inc(stats.accepted)
        self.samples_total.labels(outcome="rejected").inc(stats.rejected_total)
        self.samples_total.labels(outcome="skipped").inc(stats.skipped)
        for reason, count in stats.rejected.items():
            self.rejected_total.labels(reason=reason).inc(count)
        self.last_batch_size.set(stats.accepted)
