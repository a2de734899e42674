"""Parse, register and filter one scraped payload."""
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from cap.filters import FilterConfig, rejection_reason
from cap.parser import TEXT_CONTENT_TYPE, EntryType, ExpositionParser
from cap.registry import SeriesRegistry
from cap.series import LabelSet, MetricMetadata, RefSample

logger = logging.getLogger(__name__)

MetadataLookup = Callable[[str], Optional[MetricMetadata]]
LabelsLookup = Callable[[int], LabelSet]


@dataclass
class PipelineStats:
    """Counters for a single pipeline run."""
    series: int = 0
    accepted: int = 0
    skipped: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False
    error: Optional[str] = None

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())


@dataclass(frozen=True)
class ScrapeResult:
    """Accepted batch plus everything needed to interpret it."""
    batch: Tuple[RefSample, ...]
    metadata: Mapping[str, MetricMetadata]
    registry: SeriesRegistry
    stats: PipelineStats

    def metadata_lookup(self) -> MetadataLookup:
        """Lookup closed over this cycle's metadata snapshot."""
        metadata = self.metadata

        def lookup(metric: str) -> Optional[MetricMetadata]:
            return metadata.get(metric)

        return lookup

    def labels_lookup(self) -> LabelsLookup:
        return self.registry.lookup


def _metadata_for(name: str, current: Optional[MetricMetadata],
                  metadata: Dict[str, MetricMetadata]) -> MetricMetadata:
    """Pick the metadata record a series of metric ``name`` should be indexed under."""
    if current is not None and name in (current.metric, current.metric + "_total"):
        if current.metric == name:
            return current
        return MetricMetadata(metric=name, help=current.help, type=current.type)
    return metadata.get(name, MetricMetadata(metric=name))


class ScrapePipeline:
    """Turns a raw exposition payload into an accepted batch."""

    def __init__(self, filter_config: FilterConfig):
        self.filter_config = filter_config

    def run(
        self,
        payload: Union[bytes, str],
        content_type: Optional[str] = TEXT_CONTENT_TYPE,
        default_timestamp_ms: Optional[int] = None,
    ) -> ScrapeResult:
        """
        Process one payload.

        Args:
            payload: Raw exposition body
            content_type: Content type reported by the endpoint
            default_timestamp_ms: Timestamp for samples without one, usually fetch time

        Returns:
            ScrapeResult with the accepted batch and metadata snapshot

        Raises:
            ParserInitError: If the payload is neither bytes nor text
        """
        parser = ExpositionParser(payload, content_type)
        registry = SeriesRegistry()

        if default_timestamp_ms is None:
            default_timestamp_ms = int(time.time() * 1000)

        current: Optional[MetricMetadata] = None
        metadata: Dict[str, MetricMetadata] = {}
        batch: List[RefSample] = []
        stats = PipelineStats()

        for entry in parser:
            if entry.kind == EntryType.HELP:
                if current is not None and current.metric == entry.metric:
                    current = MetricMetadata(entry.metric, help=entry.text, type=current.type)
                else:
                    current = MetricMetadata(entry.metric, help=entry.text)
                continue

            if entry.kind == EntryType.TYPE:
                if current is not None and current.metric == entry.metric:
                    current = MetricMetadata(entry.metric, help=current.help, type=entry.text)
                else:
                    current = MetricMetadata(entry.metric, type=entry.text)
                continue

            if entry.kind in (EntryType.COMMENT, EntryType.UNIT):
                continue

            if entry.kind in (EntryType.HISTOGRAM, EntryType.SUMMARY):
                logger.debug(f"Skipping {entry.kind.value} series for {entry.metric} (not supported)")
                stats.skipped += 1
                continue

            stats.series += 1
            ref = registry.resolve(entry.labels)
            metadata[entry.metric] = _metadata_for(entry.metric, current, metadata)

            reason = rejection_reason(entry.labels, entry.metric, entry.value, self.filter_config)
            if reason is not None:
                stats.rejected[reason] = stats.rejected.get(reason, 0) + 1
                continue

            timestamp_ms = entry.timestamp_ms
            if timestamp_ms is None:
                timestamp_ms = default_timestamp_ms
            batch.append(RefSample(ref=ref, value=entry.value, timestamp_ms=timestamp_ms))
            stats.accepted += 1

        stats.truncated = parser.truncated
        stats.error = parser.error

        return ScrapeResult(
            batch=tuple(batch),
            metadata=MappingProxyType(metadata),
            registry=registry,
            stats=stats,
        )
