"""Parser for the line-oriented text exposition format.

The parser is a finite, non-restartable iterator of ``Entry`` values.
Iteration stops at the end of the payload or at the first malformed line;
entries yielded before that point stay valid and no exception is raised
for the bad line. The reason is kept on ``parser.error`` (with the line
number on ``parser.error_line``) and logged, so callers can tell a
truncated payload from a complete one without treating it as a failure.

Series lines that belong to a histogram or summary family (as declared by
a preceding ``# TYPE`` line) are surfaced as ``HISTOGRAM``/``SUMMARY``
entries and never decoded further.

Both the classic Prometheus text format (``text/plain``, millisecond
timestamps) and OpenMetrics (``application/openmetrics-text``, second
timestamps, ``# UNIT`` and ``# EOF``) are accepted. Any media type other
than OpenMetrics is read as the text format. Bytes payloads are decoded
as UTF-8 one line at a time, so an undecodable line truncates like any
other malformed line.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

from cap.errors import ParserInitError
from cap.series import EMPTY_LABELS, METRIC_NAME_LABEL, LabelSet

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain"
OPENMETRICS_CONTENT_TYPE = "application/openmetrics-text"

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_PAIR_RE = re.compile(r'[ \t]*([a-zA-Z_][a-zA-Z0-9_]*)[ \t]*=[ \t]*"((?:[^"\\\n]|\\.)*)"[ \t]*')
_SAMPLE_TAIL_RE = re.compile(r"[ \t]+(\S+)(?:[ \t]+(\S+))?[ \t]*")
_FLOAT_RE = re.compile(
    r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?|[-+]?(?:inf|infinity|nan)",
    re.IGNORECASE,
)
_INT_RE = re.compile(r"-?\d+")
_META_KEYWORD_RE = re.compile(r"#[ \t]+(HELP|TYPE|UNIT)(?:[ \t]|$)")
_META_RE = re.compile(r"#[ \t]+(HELP|TYPE|UNIT)[ \t]+([a-zA-Z_:][a-zA-Z0-9_:]*)(?:[ \t]+(.*))?")
_ESCAPE_RE = re.compile(r"\\(.)")

_TEXT_TYPES = {
    "counter": "counter",
    "gauge": "gauge",
    "histogram": "histogram",
    "summary": "summary",
    "untyped": "untyped",
}
_OPENMETRICS_TYPES = {
    "counter": "counter",
    "gauge": "gauge",
    "histogram": "histogram",
    "gaugehistogram": "histogram",
    "summary": "summary",
    "unknown": "untyped",
    "info": "untyped",
    "stateset": "untyped",
}

# Suffixes under which histogram/summary families report their series
_FAMILY_SUFFIXES = ("_bucket", "_count", "_sum", "_created", "_gcount", "_gsum")


class EntryType(str, Enum):
    HELP = "help"
    TYPE = "type"
    COMMENT = "comment"
    UNIT = "unit"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"
    SERIES = "series"


@dataclass(frozen=True)
class Entry:
    """One decoded line of the payload.

    ``text`` holds the help text for HELP, the metric type for TYPE, the
    unit for UNIT and the comment body for COMMENT. ``labels``, ``value``
    and ``timestamp_ms`` are only meaningful for series-like entries.
    """
    kind: EntryType
    metric: str = ""
    text: str = ""
    labels: LabelSet = EMPTY_LABELS
    value: float = 0.0
    timestamp_ms: Optional[int] = None


class MalformedLineError(ValueError):
    """Raised internally when a line cannot be decoded."""


def _unescape_label_value(raw: str) -> str:
    def replace(match):
        char = match.group(1)
        if char == "n":
            return "\n"
        if char in ('"', "\\"):
            return char
        return match.group(0)

    return _ESCAPE_RE.sub(replace, raw)


def _unescape_help(raw: str) -> str:
    def replace(match):
        char = match.group(1)
        if char == "n":
            return "\n"
        if char == "\\":
            return "\\"
        return match.group(0)

    return _ESCAPE_RE.sub(replace, raw)


def is_openmetrics(content_type: Optional[str]) -> bool:
    """True for OpenMetrics; every other media type is read as the text format."""
    media_type = (content_type or TEXT_CONTENT_TYPE).split(";", 1)[0].strip().lower()
    if media_type == OPENMETRICS_CONTENT_TYPE:
        return True
    if media_type not in ("", TEXT_CONTENT_TYPE):
        logger.debug(f"Unrecognised content type {content_type!r}, parsing as {TEXT_CONTENT_TYPE}")
    return False


class ExpositionParser:
    """Iterator over the entries of one exposition payload."""

    def __init__(self, payload: Union[bytes, str], content_type: Optional[str] = TEXT_CONTENT_TYPE):
        if isinstance(payload, (bytes, bytearray)):
            # Decoded line by line; a bad byte only truncates from its line on
            self._lines = bytes(payload).split(b"\n")
        elif isinstance(payload, str):
            self._lines = payload.split("\n")
        else:
            raise ParserInitError(f"cannot parse payload of type {type(payload).__name__}")

        self.openmetrics = is_openmetrics(content_type)

        # metric family name -> declared type, for this payload only
        self._types: Dict[str, str] = {}

        self.line_number = 0
        self.error: Optional[str] = None
        self.error_line: Optional[int] = None
        self._entries = self._parse()

    def __iter__(self) -> "ExpositionParser":
        return self

    def __next__(self) -> Entry:
        return next(self._entries)

    @property
    def truncated(self) -> bool:
        """True when iteration stopped on a malformed line."""
        return self.error is not None

    def _parse(self) -> Iterator[Entry]:
        for line_number, raw in enumerate(self._lines, start=1):
            self.line_number = line_number

            try:
                line = self._decode(raw).rstrip("\r").lstrip(" \t")
                if not line.strip():
                    continue
                entry = self._parse_line(line)
            except MalformedLineError as e:
                self.error = str(e)
                self.error_line = line_number
                logger.warning(
                    f"Malformed exposition line {line_number}: {e}; "
                    f"ignoring the rest of the payload"
                )
                return

            if entry is None:
                # OpenMetrics "# EOF"
                return
            yield entry

    @staticmethod
    def _decode(raw: Union[bytes, str]) -> str:
        if isinstance(raw, str):
            return raw
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedLineError(f"invalid UTF-8 at byte {e.start}") from e

    def _parse_line(self, line: str) -> Optional[Entry]:
        if line.startswith("#"):
            return self._parse_comment(line)

        name, labels, value, timestamp_ms = self._parse_sample(line)

        family, metric_type = self._family_of(name)
        if metric_type == "histogram":
            return Entry(EntryType.HISTOGRAM, metric=family, labels=labels,
                         value=value, timestamp_ms=timestamp_ms)
        if metric_type == "summary":
            return Entry(EntryType.SUMMARY, metric=family, labels=labels,
                         value=value, timestamp_ms=timestamp_ms)

        return Entry(EntryType.SERIES, metric=name, labels=labels,
                     value=value, timestamp_ms=timestamp_ms)

    def _parse_comment(self, line: str) -> Optional[Entry]:
        if self.openmetrics and line.rstrip() == "# EOF":
            return None

        keyword = _META_KEYWORD_RE.match(line)
        if keyword is None or (keyword.group(1) == "UNIT" and not self.openmetrics):
            return Entry(EntryType.COMMENT, text=line[1:].strip())

        match = _META_RE.fullmatch(line.rstrip())
        if match is None:
            raise MalformedLineError(f"invalid {keyword.group(1)} line")

        kind, metric, rest = match.group(1), match.group(2), match.group(3) or ""

        if kind == "HELP":
            return Entry(EntryType.HELP, metric=metric, text=_unescape_help(rest))

        if kind == "UNIT":
            return Entry(EntryType.UNIT, metric=metric, text=rest.strip())

        known = _OPENMETRICS_TYPES if self.openmetrics else _TEXT_TYPES
        metric_type = known.get(rest.strip())
        if metric_type is None:
            raise MalformedLineError(f"invalid metric type {rest.strip()!r} for {metric}")
        self._types[metric] = metric_type
        return Entry(EntryType.TYPE, metric=metric, text=metric_type)

    def _parse_sample(self, line: str) -> Tuple[str, LabelSet, float, Optional[int]]:
        match = _METRIC_NAME_RE.match(line)
        if match is None:
            raise MalformedLineError("invalid metric name")

        name = match.group(0)
        pairs: List[Tuple[str, str]] = [(METRIC_NAME_LABEL, name)]
        pos = match.end()
        if pos < len(line) and line[pos] == "{":
            pos = self._parse_labels(line, pos + 1, pairs)

        tail = line[pos:]
        if self.openmetrics and " # " in tail:
            # drop exemplar
            tail = tail.split(" # ", 1)[0]

        match = _SAMPLE_TAIL_RE.fullmatch(tail)
        if match is None:
            raise MalformedLineError(f"invalid sample for {name}")

        value = self._parse_value(match.group(1))
        timestamp_ms = None
        if match.group(2) is not None:
            timestamp_ms = self._parse_timestamp(match.group(2))

        return name, LabelSet.from_pairs(pairs), value, timestamp_ms

    @staticmethod
    def _parse_labels(line: str, pos: int, pairs: List[Tuple[str, str]]) -> int:
        """Parse ``name="value",...}`` starting at ``pos``; return the position after ``}``."""
        seen = {name for name, _ in pairs}
        while True:
            while pos < len(line) and line[pos] in " \t":
                pos += 1
            if pos < len(line) and line[pos] == "}":
                return pos + 1

            match = _LABEL_PAIR_RE.match(line, pos)
            if match is None:
                raise MalformedLineError("invalid label pair")

            label_name, raw_value = match.groups()
            if label_name in seen:
                raise MalformedLineError(f"duplicate label name {label_name!r}")
            seen.add(label_name)
            pairs.append((label_name, _unescape_label_value(raw_value)))

            pos = match.end()
            if pos < len(line) and line[pos] == ",":
                pos += 1
                continue
            if pos < len(line) and line[pos] == "}":
                return pos + 1
            raise MalformedLineError("expected ',' or '}' after label pair")

    @staticmethod
    def _parse_value(token: str) -> float:
        if not _FLOAT_RE.fullmatch(token):
            raise MalformedLineError(f"invalid sample value {token!r}")
        return float(token)

    def _parse_timestamp(self, token: str) -> int:
        if self.openmetrics:
            if not _FLOAT_RE.fullmatch(token):
                raise MalformedLineError(f"invalid timestamp {token!r}")
            seconds = float(token)
            if seconds != seconds or seconds in (float("inf"), float("-inf")):
                raise MalformedLineError(f"invalid timestamp {token!r}")
            return int(round(seconds * 1000))

        if not _INT_RE.fullmatch(token):
            raise MalformedLineError(f"invalid timestamp {token!r}")
        return int(token)

    def _family_of(self, name: str) -> Tuple[str, Optional[str]]:
        """Find the declared family and type a series name belongs to."""
        metric_type = self._types.get(name)
        if metric_type is not None:
            return name, metric_type

        for suffix in _FAMILY_SUFFIXES:
            if name.endswith(suffix):
                family = name[:-len(suffix)]
                metric_type = self._types.get(family)
                if metric_type in ("histogram", "summary"):
                    return family, metric_type

        return name, None


def parse(payload: Union[bytes, str], content_type: Optional[str] = TEXT_CONTENT_TYPE) -> ExpositionParser:
    """Create a parser over ``payload``. Raises ParserInitError for a non-bytes, non-text payload."""
    return ExpositionParser(payload, content_type)
