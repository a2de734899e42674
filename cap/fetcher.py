"""HTTP fetch of the raw metrics payload."""
from dataclasses import dataclass
import logging
import time

import requests

from cap.errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "libops-cap"


@dataclass(frozen=True)
class FetchResult:
    """A fully read metrics response."""
    body: bytes
    content_type: str
    fetched_at_ms: int


class MetricsFetcher:
    """Fetches ``/metrics`` from a cAdvisor-style endpoint."""

    def __init__(self, host: str, timeout_s: float = 10.0, session: requests.Session = None):
        self.url = f"http://{host}/metrics"
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT

    def fetch(self) -> FetchResult:
        """
        GET the metrics endpoint and read the whole body.

        The request is bounded only by its own timeout; nothing else
        interrupts it once started.

        Raises:
            FetchError: On connection failure, timeout, non-200 status or read failure
        """
        fetched_at_ms = int(time.time() * 1000)
        try:
            response = self.session.get(self.url, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise FetchError(f"failed to fetch metrics from {self.url}: {e}") from e

        try:
            if response.status_code != 200:
                raise FetchError(
                    f"metrics endpoint responded with non-OK status: "
                    f"{response.status_code} {response.reason}"
                )
            try:
                body = response.content
            except requests.RequestException as e:
                raise FetchError(f"failed to read response body: {e}") from e
        finally:
            response.close()

        logger.debug(f"Fetched {len(body)} bytes from {self.url}")
        return FetchResult(
            body=body,
            content_type=response.headers.get("Content-Type", "text/plain"),
            fetched_at_ms=fetched_at_ms,
        )

    def close(self):
        self.session.close()
