"""Inclusion rules applied to every scraped series."""
import re
from dataclasses import dataclass
from typing import Optional

from cap.series import LabelSet

CONTAINER_NAME_LABEL = "name"
EXCLUDED_NAME_PREFIX = "libops-"
EXCLUDED_CONTAINER = "cap"
EXCLUDED_METRIC = "container_tasks_state"

MATCH_ALL = ".*"


@dataclass(frozen=True)
class FilterConfig:
    """Compiled inclusion pattern. Built once at startup, shared read-only."""
    pattern: re.Pattern = re.compile(MATCH_ALL)

    @classmethod
    def from_pattern(cls, pattern: Optional[str]) -> "FilterConfig":
        """Compile ``pattern``; raises re.error for an invalid expression."""
        return cls(re.compile(pattern or MATCH_ALL))


def rejection_reason(labels: LabelSet, metric_name: str, value: float, config: FilterConfig) -> Optional[str]:
    """
    Return the first rule a sample fails, or None if it is accepted.

    Rules:
        - container name must not start with ``libops-``
        - the metric must not be ``container_tasks_state``
        - the value must be strictly positive (NaN and 0.0 fail)
        - container name must not be ``cap``
        - the pattern must match the rendered label set
    """
    container = labels.get(CONTAINER_NAME_LABEL)

    if container.startswith(EXCLUDED_NAME_PREFIX):
        return "libops_container"
    if metric_name == EXCLUDED_METRIC:
        return "tasks_state"
    if not value > 0.0:
        return "non_positive"
    if container == EXCLUDED_CONTAINER:
        return "cap_container"
    if config.pattern.search(str(labels)) is None:
        return "pattern"
    return None


def accept(labels: LabelSet, metric_name: str, value: float, config: FilterConfig) -> bool:
    """True iff the sample passes every inclusion rule."""
    return rejection_reason(labels, metric_name, value, config) is None
