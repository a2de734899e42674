"""Content-addressed series references for one scrape cycle."""
import hashlib
import logging
from typing import Dict

from cap.series import EMPTY_LABELS, LabelSet

logger = logging.getLogger(__name__)

_SEPARATOR = b"\xff"


def series_ref(labels: LabelSet) -> int:
    """Derive a stable 64-bit reference from label set content."""
    digest = hashlib.md5()
    for name, value in labels:
        digest.update(name.encode("utf-8"))
        digest.update(_SEPARATOR)
        digest.update(value.encode("utf-8"))
        digest.update(_SEPARATOR)
    return int(digest.hexdigest()[:16], 16)


class SeriesRegistry:
    """Maps series references to label sets.

    A registry lives for a single scrape cycle; the pipeline allocates a
    fresh one per payload, so references carry no meaning across cycles.
    """

    def __init__(self):
        self._labels_by_ref: Dict[int, LabelSet] = {}

    def resolve(self, labels: LabelSet) -> int:
        """Register ``labels`` and return its reference."""
        ref = series_ref(labels)
        existing = self._labels_by_ref.get(ref)
        if existing is not None and existing != labels:
            logger.warning(f"Series reference collision between {existing} and {labels}")
        self._labels_by_ref[ref] = labels
        return ref

    def lookup(self, ref: int) -> LabelSet:
        """Return the label set for ``ref``, or an empty label set if unknown."""
        return self._labels_by_ref.get(ref, EMPTY_LABELS)

    def clear(self):
        self._labels_by_ref.clear()

    def __contains__(self, ref: int) -> bool:
        return ref in self._labels_by_ref

    def __len__(self) -> int:
        return len(self._labels_by_ref)
