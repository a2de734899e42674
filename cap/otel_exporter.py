"""OpenTelemetry push exporter using OTLP."""
from typing import Any, Dict, Optional, Sequence, Tuple
import logging
import re
import threading

from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from cap.config import IdentityConfig, OTELExporterConfig
from cap.pipeline import LabelsLookup, MetadataLookup
from cap.series import LabelSet, MetricMetadata, RefSample

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.\-/]")


def otel_instrument_name(metric_name: str) -> str:
    """Map a Prometheus metric name onto the OTEL instrument name syntax."""
    name = _INVALID_NAME_CHARS.sub("_", metric_name)
    if not name[:1].isalpha():
        name = "m" + name
    return name


class OTELExporter:
    """
    Pushes the latest accepted samples over OTLP.

    Scraped values are already cumulative (counters) or absolute (gauges),
    so every metric is reported through an observable instrument whose
    callback reads the most recent batch. The periodic reader runs in its
    own thread; ``export`` only swaps the snapshot the callbacks read.
    Original sample timestamps are not carried, OTEL stamps each
    collection itself.
    """

    def __init__(
        self,
        config: OTELExporterConfig,
        identity: IdentityConfig,
        reader: Optional[MetricReader] = None
    ):
        self.config = config
        self.identity = identity

        # Store instrument objects
        self.instruments: Dict[str, Any] = {}
        self.instrument_types: Dict[str, str] = {}

        # metric name -> {label set -> (value, attributes)}
        self.latest: Dict[str, Dict[LabelSet, Tuple[float, Dict[str, str]]]] = {}
        self._lock = threading.Lock()

        self._initialize_otel(reader)

    def _initialize_otel(self, reader: Optional[MetricReader]):
        """Initialize OpenTelemetry SDK."""
        # Create resource with attributes
        resource_attrs = {
            "service.name": "cap",
            "cloud.account.id": self.identity.project_id,
            "cloud.availability_zone": self.identity.location,
            "k8s.cluster.name": self.identity.cluster,
        }
        resource_attrs.update(self.config.resource)

        resource = Resource.create(resource_attrs)

        if reader is None:
            # Only the network push path needs the gRPC exporter
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

            exporter = OTLPMetricExporter(
                endpoint=self.config.endpoint,
                insecure=self.config.insecure,
                headers=tuple(self.config.headers.items()) if self.config.headers else None
            )

            # Create metric reader with export interval
            reader = PeriodicExportingMetricReader(
                exporter,
                export_interval_millis=self.config.export_interval_s * 1000
            )

        self.meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[reader]
        )
        self.meter = self.meter_provider.get_meter(__name__)

        logger.info(f"OTEL exporter initialized, pushing to {self.config.endpoint}")

    def _register_instrument(self, metric_name: str, meta: Optional[MetricMetadata]):
        """Create the observable instrument for a newly seen metric."""
        metric_type = meta.type if meta else "untyped"
        description = (meta.help if meta else "") or f"Scraped metric: {metric_name}"
        otel_name = otel_instrument_name(metric_name)
        callback = self._callback_for(metric_name)

        try:
            if metric_type == "counter":
                instrument = self.meter.create_observable_counter(
                    name=otel_name,
                    callbacks=[callback],
                    description=description,
                    unit="1"
                )
            else:
                instrument = self.meter.create_observable_gauge(
                    name=otel_name,
                    callbacks=[callback],
                    description=description,
                    unit="1"
                )
        except Exception as e:
            logger.error(f"Failed to register instrument {otel_name}: {e}")
            # Remembered so the metric is skipped instead of retried every cycle
            self.instruments[metric_name] = None
            return

        self.instruments[metric_name] = instrument
        self.instrument_types[metric_name] = metric_type
        logger.info(f"Registered OTEL instrument: {otel_name} ({metric_type})")

    def _callback_for(self, metric_name: str):
        def callback(options: CallbackOptions):
            with self._lock:
                series = self.latest.get(metric_name, {})
                return [
                    Observation(value, attributes=attributes)
                    for value, attributes in series.values()
                ]

        return callback

    def export(self, batch: Sequence[RefSample], metadata: MetadataLookup, labels: LabelsLookup):
        """Make ``batch`` the values reported on the next collection."""
        latest: Dict[str, Dict[LabelSet, Tuple[float, Dict[str, str]]]] = {}

        for sample in batch:
            label_set = labels(sample.ref)
            if not label_set:
                logger.warning(f"No labels registered for series ref {sample.ref}, dropping sample")
                continue

            metric_name = label_set.metric_name
            if metric_name not in self.instruments:
                self._register_instrument(metric_name, metadata(metric_name))
            if self.instruments[metric_name] is None:
                continue

            latest.setdefault(metric_name, {})[label_set] = (sample.value, label_set.without_name())

        with self._lock:
            self.latest = latest

    def shutdown(self):
        """Shutdown OTEL exporter."""
        if hasattr(self, 'meter_provider'):
            self.meter_provider.shutdown()
            logger.info("OTEL exporter shutdown complete")
