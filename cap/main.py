"""Main entry point for the cAdvisor scraper."""
import argparse
import logging
import sys
import threading
import signal

from cap.config import Config, load_config
from cap.errors import ConfigError
from cap.fetcher import MetricsFetcher
from cap.pipeline import ScrapePipeline
from cap.scheduler import ScrapeScheduler, run_scheduler_thread
from cap.control_api import ControlAPI


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Same layout for both formats until a JSON formatter is wired in
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_exporters(config: Config):
    """Create the enabled exporters and, with Prometheus, the self-metrics."""
    from cap.prom_exporter import PrometheusExporter, SelfMetrics

    exporters = []
    self_metrics = None

    if config.exporters.prometheus.enabled:
        prom_exporter = PrometheusExporter(config.exporters.prometheus)
        self_metrics = SelfMetrics(registry=prom_exporter.registry)
        exporters.append(prom_exporter)

    if config.exporters.otel.enabled:
        from cap.otel_exporter import OTELExporter
        exporters.append(OTELExporter(config.exporters.otel, config.identity))

    return exporters, self_metrics


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="cAdvisor scraper - filter container metrics and export them"
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to optional configuration YAML file (environment variables override it)"
    )

    args = parser.parse_args()

    # Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("cAdvisor Scraper")
    logger.info("=" * 60)
    logger.info(f"Scrape target: {config.metrics_url}")
    logger.info(f"Scrape interval: {config.scraper.scrape_interval_s}s")
    logger.info(f"Filter pattern: {config.scraper.filter_pattern}")
    logger.info(
        f"Identity: project={config.identity.project_id} "
        f"location={config.identity.location} cluster={config.identity.cluster}"
    )

    try:
        exporters, self_metrics = build_exporters(config)
    except Exception as e:
        logger.error(f"Failed to initialize exporters: {e}", exc_info=True)
        sys.exit(1)

    if not exporters:
        logger.warning("No exporters enabled - accepted samples will be dropped")

    fetcher = MetricsFetcher(config.scraper.cadvisor_host, timeout_s=config.scraper.fetch_timeout_s)
    scheduler = ScrapeScheduler(
        config,
        ScrapePipeline(config.build_filter()),
        fetcher,
        exporters,
        cancel=threading.Event(),
        self_metrics=self_metrics
    )

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if config.global_.control_api_enabled:
            scheduler_thread = threading.Thread(
                target=run_scheduler_thread,
                args=(scheduler,),
                daemon=True
            )
            scheduler_thread.start()

            # Run control API (blocking)
            logger.info(f"Starting control API on port {config.global_.control_api_port}")
            try:
                ControlAPI(scheduler).run(
                    host="0.0.0.0",
                    port=config.global_.control_api_port
                )
            except Exception as e:
                logger.error(f"Control API error: {e}", exc_info=True)
            finally:
                scheduler.stop()
                scheduler_thread.join()
        else:
            scheduler.run()
    finally:
        for exporter in exporters:
            exporter.shutdown()
        fetcher.close()

    logger.info("Scraper stopped gracefully")


if __name__ == "__main__":
    main()
