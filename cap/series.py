"""Data structures for scraped series, samples and metric metadata."""
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Tuple

METRIC_NAME_LABEL = "__name__"


_QUOTE_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def quote_label_value(value: str) -> str:
    """Double-quote a label value, escaping it the way Go's strconv.Quote does.

    Printable characters are kept as is; other control and non-printable
    characters become ``\\xNN``, ``\\uNNNN`` or ``\\UNNNNNNNN``.
    """
    out = []
    for char in value:
        escaped = _QUOTE_ESCAPES.get(char)
        if escaped is not None:
            out.append(escaped)
        elif char.isprintable():
            out.append(char)
        elif ord(char) < 0x80:
            out.append(f"\\x{ord(char):02x}")
        elif ord(char) < 0x10000:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(f"\\U{ord(char):08x}")
    return '"' + "".join(out) + '"'


@dataclass(frozen=True)
class LabelSet:
    """An immutable set of label pairs, kept sorted by label name.

    The metric name travels as the reserved ``__name__`` label, so two
    label sets compare equal iff they describe the same series.
    """
    pairs: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "LabelSet":
        return cls(tuple(sorted(pairs)))

    @classmethod
    def from_dict(cls, labels: Dict[str, str], metric_name: Optional[str] = None) -> "LabelSet":
        items = dict(labels)
        if metric_name is not None:
            items[METRIC_NAME_LABEL] = metric_name
        return cls.from_pairs(items.items())

    @property
    def metric_name(self) -> str:
        return self.get(METRIC_NAME_LABEL)

    def get(self, name: str, default: str = "") -> str:
        for label_name, value in self.pairs:
            if label_name == name:
                return value
        return default

    def to_dict(self) -> Dict[str, str]:
        return dict(self.pairs)

    def without_name(self) -> Dict[str, str]:
        """Labels without the reserved metric name label."""
        return {k: v for k, v in self.pairs if k != METRIC_NAME_LABEL}

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)

    def __bool__(self) -> bool:
        return bool(self.pairs)

    def __str__(self) -> str:
        body = ", ".join(f"{k}={quote_label_value(v)}" for k, v in self.pairs)
        return "{" + body + "}"


EMPTY_LABELS = LabelSet()


@dataclass(frozen=True)
class MetricMetadata:
    """HELP/TYPE information for one metric family."""
    metric: str
    help: str = ""
    type: str = "untyped"


@dataclass(frozen=True)
class RefSample:
    """An accepted observation, identified by its series reference."""
    ref: int
    value: float
    timestamp_ms: int
