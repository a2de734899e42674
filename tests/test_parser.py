#!/usr/bin/env python3
"""Tests for the exposition format parser."""
import math
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from cap.errors import ParserInitError
from cap.parser import OPENMETRICS_CONTENT_TYPE, EntryType, ExpositionParser, parse
from cap.series import LabelSet


def test_help_type_and_series():
    """Metadata lines and a sample decode in order."""
    body = b"""
# HELP container_memory_working_set_bytes Current working set of the container.
# TYPE container_memory_working_set_bytes gauge
container_memory_working_set_bytes{id="/",name="test-mem",namespace="test-ns"} 1000000.0
"""
    entries = list(parse(body))

    assert [e.kind for e in entries] == [EntryType.HELP, EntryType.TYPE, EntryType.SERIES]

    help_entry, type_entry, series = entries
    assert help_entry.metric == "container_memory_working_set_bytes"
    assert help_entry.text == "Current working set of the container."
    assert type_entry.text == "gauge"

    assert series.metric == "container_memory_working_set_bytes"
    assert series.value == 1000000.0
    assert series.timestamp_ms is None
    assert series.labels == LabelSet.from_dict(
        {"id": "/", "name": "test-mem", "namespace": "test-ns"},
        metric_name="container_memory_working_set_bytes",
    )


def test_series_without_labels_and_with_timestamp():
    entries = list(parse("up 1 1678886400000\nprocess_open_fds{} 12\n"))

    assert len(entries) == 2
    assert entries[0].metric == "up"
    assert entries[0].labels.to_dict() == {"__name__": "up"}
    assert entries[0].timestamp_ms == 1678886400000
    assert entries[1].metric == "process_open_fds"
    assert entries[1].value == 12.0


def test_special_float_values():
    entries = list(parse('a NaN\nb +Inf\nc -Inf\nd 1.5e3\ne -0.0\n'))

    values = [e.value for e in entries]
    assert math.isnan(values[0])
    assert values[1] == float("inf")
    assert values[2] == float("-inf")
    assert values[3] == 1500.0
    assert values[4] == 0.0


def test_label_value_escapes():
    entries = list(parse(r'm{a="x\"y\\z\nw",path="/a}b,c"} 1'))

    assert len(entries) == 1
    labels = entries[0].labels
    assert labels.get("a") == 'x"y\\z\nw'
    assert labels.get("path") == "/a}b,c"


def test_help_escapes():
    entries = list(parse(r"# HELP m Some \\ help\nsecond line"))

    assert entries[0].kind == EntryType.HELP
    assert entries[0].text == "Some \\ help\nsecond line"


def test_trailing_comma_and_whitespace_in_labels():
    entries = list(parse('m{ a = "1" , b="2", } 3\n'))

    assert entries[0].labels.without_name() == {"a": "1", "b": "2"}
    assert entries[0].value == 3.0


def test_comments_and_blank_lines():
    body = "# just a comment\n\n   \n# UNIT m seconds\nm 1\n"
    entries = list(parse(body))

    # UNIT is only meaningful in OpenMetrics; in the text format it is a comment
    assert [e.kind for e in entries] == [EntryType.COMMENT, EntryType.COMMENT, EntryType.SERIES]
    assert entries[0].text == "just a comment"


def test_crlf_line_endings():
    entries = list(parse(b"a 1\r\nb 2\r\n"))
    assert [(e.metric, e.value) for e in entries] == [("a", 1.0), ("b", 2.0)]


def test_histogram_and_summary_are_recognised_not_decoded():
    body = """
# HELP req_seconds Request latency.
# TYPE req_seconds histogram
req_seconds_bucket{le="0.1"} 3
req_seconds_bucket{le="+Inf"} 5
req_seconds_sum 1.2
req_seconds_count 5
# TYPE rpc summary
rpc{quantile="0.5"} 0.2
rpc_sum 3
rpc_count 9
# TYPE up gauge
up 1
"""
    entries = list(parse(body))

    kinds = [e.kind for e in entries]
    assert kinds.count(EntryType.HISTOGRAM) == 4
    assert kinds.count(EntryType.SUMMARY) == 3
    assert kinds.count(EntryType.SERIES) == 1

    histogram = [e for e in entries if e.kind == EntryType.HISTOGRAM]
    assert {e.metric for e in histogram} == {"req_seconds"}
    assert entries[-1].kind == EntryType.SERIES
    assert entries[-1].metric == "up"


def test_count_suffix_of_plain_counter_is_a_series():
    entries = list(parse("# TYPE restarts counter\nrestarts_count 2\n"))
    assert entries[-1].kind == EntryType.SERIES
    assert entries[-1].metric == "restarts_count"


def test_malformed_line_truncates():
    """Entries before the bad line survive, nothing after it is read."""
    body = 'a 1\nb{x="y"} 2\nc{x="y" 3\nd 4\n'
    parser = ExpositionParser(body)
    entries = list(parser)

    assert [e.metric for e in entries] == ["a", "b"]
    assert parser.truncated
    assert parser.error_line == 3
    assert parser.error


def test_truncation_reasons():
    bad_lines = [
        "m{a=\"1\",a=\"2\"} 1",  # duplicate label
        "m 1.0.0",  # bad value
        "m 1 12.5",  # float timestamp in text format
        "m 1 2 3",  # extra token
        "m",  # no value
        "m{a=1} 1",  # unquoted label value
        "0m 1",  # bad metric name
        "# TYPE m bogus",  # unknown type
        "# TYPE m",  # missing type
        "# HELP",  # missing metric name
    ]
    for line in bad_lines:
        parser = ExpositionParser(f"ok 1\n{line}\nafter 1\n")
        entries = list(parser)
        assert [e.metric for e in entries] == ["ok"], line
        assert parser.truncated, line


def test_complete_payload_is_not_truncated():
    parser = ExpositionParser("a 1\n")
    list(parser)
    assert not parser.truncated
    assert parser.error is None


def test_empty_payload():
    parser = ExpositionParser(b"")
    assert list(parser) == []
    assert not parser.truncated


def test_parser_is_not_restartable():
    parser = ExpositionParser("a 1\nb 2\n")
    assert len(list(parser)) == 2
    assert list(parser) == []


def test_init_errors():
    with pytest.raises(ParserInitError):
        ExpositionParser(12345)

    with pytest.raises(ParserInitError):
        ExpositionParser(None)


def test_invalid_utf8_truncates_at_its_line():
    parser = ExpositionParser(b'a{name="x"} 1\nb{name="y"} 2\nc{name="\xff"} 3\nd 4\n')
    entries = list(parser)

    assert [e.metric for e in entries] == ["a", "b"]
    assert parser.truncated
    assert parser.error_line == 3
    assert "UTF-8" in parser.error


def test_unknown_content_type_is_parsed_as_text():
    for content_type in ("application/octet-stream", "text/html; charset=utf-8",
                         "application/vnd.google.protobuf", None, ""):
        entries = list(parse(b"a 1 1678886400000\n", content_type=content_type))
        assert len(entries) == 1
        assert entries[0].timestamp_ms == 1678886400000


def test_content_type_parameters_are_ignored():
    entries = list(parse(b"a 1\n", content_type="text/plain; version=0.0.4; charset=utf-8"))
    assert len(entries) == 1


def test_openmetrics():
    body = """# TYPE foo counter
# UNIT foo seconds
# HELP foo Time spent.
foo_total{a="b"} 1.5 1678886400.5 # {trace_id="abc"} 1.0
# TYPE state unknown
state 1
# EOF
foo_total{a="c"} 2
"""
    entries = list(parse(body, content_type=OPENMETRICS_CONTENT_TYPE))

    kinds = [e.kind for e in entries]
    assert kinds == [
        EntryType.TYPE, EntryType.UNIT, EntryType.HELP, EntryType.SERIES,
        EntryType.TYPE, EntryType.SERIES,
    ]
    assert entries[1].text == "seconds"
    assert entries[3].metric == "foo_total"
    assert entries[3].value == 1.5
    assert entries[3].timestamp_ms == 1678886400500
    assert entries[4].text == "untyped"
