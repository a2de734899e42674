"""Scrape scheduler: fetch, pipeline and export on a fixed interval."""
import time
import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from cap.config import Config
from cap.errors import FetchError, ParserInitError
from cap.fetcher import MetricsFetcher
from cap.pipeline import PipelineStats, ScrapePipeline, ScrapeResult
from cap.prom_exporter import SelfMetrics

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class ScrapeScheduler:
    """
    Runs one scrape cycle per interval until cancelled.

    Cancellation is cooperative: the ``cancel`` event is only checked when
    ``run`` starts and between cycles. A cycle that has started, including
    its fetch, always runs to completion.
    """

    def __init__(
        self,
        config: Config,
        pipeline: ScrapePipeline,
        fetcher: MetricsFetcher,
        exporters: Sequence[Any],
        cancel: Optional[threading.Event] = None,
        self_metrics: Optional[SelfMetrics] = None
    ):
        self.config = config
        self.interval_s = config.scraper.scrape_interval_s
        self.pipeline = pipeline
        self.fetcher = fetcher
        self.exporters = list(exporters)
        self.cancel = cancel or threading.Event()
        self.self_metrics = self_metrics

        self.state = SchedulerState.IDLE
        self.tick_count = 0
        self.failures: Dict[str, int] = {}
        self.last_stats: Optional[PipelineStats] = None
        self.last_cycle_time: Optional[float] = None
        self.start_time = time.time()

    def run(self):
        """Run cycles until the cancel event is set. Blocks."""
        if self.state != SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler cannot be started from state {self.state.value}")

        if self.cancel.is_set():
            logger.info("Scheduler cancelled before start")
            self.state = SchedulerState.STOPPED
            return

        self.state = SchedulerState.RUNNING
        self.start_time = time.time()
        logger.info(
            f"Starting scraper: {self.fetcher.url} every {self.interval_s}s"
        )

        sleep_time = self.interval_s
        while not self.cancel.wait(sleep_time):
            tick_start = time.time()

            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in tick: {e}", exc_info=True)

            # Sleep for remaining time in tick interval
            tick_duration = time.time() - tick_start
            sleep_time = max(0, self.interval_s - tick_duration)
            if sleep_time == 0:
                logger.warning(
                    f"Cycle took {tick_duration:.3f}s, longer than interval {self.interval_s}s"
                )

        self.state = SchedulerState.STOPPED
        logger.info("Scraper stopped")

    def stop(self):
        """Request a stop; the current cycle, if any, finishes first."""
        logger.info("Stopping scraper")
        self.cancel.set()

    def tick(self) -> Optional[ScrapeResult]:
        """Execute one fetch, parse, filter and export cycle.

        Failures are logged and isolated to this cycle. Returns the
        pipeline result, or None if the cycle was skipped.
        """
        cycle_start = time.time()
        self.tick_count += 1

        try:
            result = self._scrape_and_export()
        finally:
            duration = time.time() - cycle_start
            self.last_cycle_time = time.time()
            if self.self_metrics:
                self.self_metrics.record_cycle(duration)

        if result is not None:
            stats = result.stats
            message = (
                f"Cycle {self.tick_count}: {stats.accepted} accepted, "
                f"{stats.rejected_total} rejected, {stats.skipped} skipped "
                f"of {stats.series} series in {duration:.3f}s"
            )
            if self.tick_count % 10 == 0:  # Log every 10 cycles
                logger.info(message)
            else:
                logger.debug(message)

        return result

    def _scrape_and_export(self) -> Optional[ScrapeResult]:
        try:
            fetched = self.fetcher.fetch()
        except FetchError as e:
            logger.error(f"Failed scrape iteration: {e}")
            self._record_failure("fetch")
            return None

        try:
            result = self.pipeline.run(
                fetched.body,
                content_type=fetched.content_type,
                default_timestamp_ms=fetched.fetched_at_ms
            )
        except ParserInitError as e:
            logger.error(f"Failed to process scraped body: {e}")
            self._record_failure("parse")
            return None

        self.last_stats = result.stats
        if self.self_metrics:
            self.self_metrics.record_stats(result.stats)

        metadata_lookup = result.metadata_lookup()
        labels_lookup = result.labels_lookup()
        for exporter in self.exporters:
            try:
                exporter.export(result.batch, metadata_lookup, labels_lookup)
            except Exception as e:
                logger.error(f"Error exporting with {type(exporter).__name__}: {e}", exc_info=True)
                self._record_failure("export")

        return result

    def _record_failure(self, stage: str):
        self.failures[stage] = self.failures.get(stage, 0) + 1
        if self.self_metrics:
            self.self_metrics.record_failure(stage)

    def status(self) -> Dict[str, Any]:
        """Snapshot of scheduler state for the control API."""
        last = self.last_stats
        return {
            "state": self.state.value,
            "uptime_seconds": time.time() - self.start_time,
            "tick_count": self.tick_count,
            "failures": dict(self.failures),
            "last_cycle_time": self.last_cycle_time,
            "last_cycle": None if last is None else {
                "series": last.series,
                "accepted": last.accepted,
                "rejected": dict(last.rejected),
                "skipped": last.skipped,
                "truncated": last.truncated,
            },
            "config": {
                "target": self.fetcher.url,
                "scrape_interval_s": self.interval_s,
                "filter_pattern": self.config.scraper.filter_pattern,
            },
        }


def run_scheduler_thread(scheduler: ScrapeScheduler):
    """Run scheduler in a separate thread."""
    try:
        scheduler.run()
    except Exception as e:
        logger.error(f"Scheduler thread error: {e}", exc_info=True)
        scheduler.stop()
