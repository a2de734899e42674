#!/usr/bin/env python3
"""Tests for series references and the per-cycle registry."""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cap.registry import SeriesRegistry, series_ref
from cap.series import EMPTY_LABELS, LabelSet


def test_resolve_is_stable_and_order_independent():
    registry = SeriesRegistry()
    first = LabelSet.from_pairs([("__name__", "m"), ("name", "my-app"), ("id", "/")])
    reordered = LabelSet.from_pairs([("id", "/"), ("name", "my-app"), ("__name__", "m")])

    ref = registry.resolve(first)
    assert registry.resolve(first) == ref
    assert registry.resolve(reordered) == ref
    assert len(registry) == 1


def test_different_content_gives_different_refs():
    registry = SeriesRegistry()
    refs = {
        registry.resolve(LabelSet.from_dict({"name": "a"}, metric_name="m")),
        registry.resolve(LabelSet.from_dict({"name": "b"}, metric_name="m")),
        registry.resolve(LabelSet.from_dict({"name": "a"}, metric_name="n")),
        # name/value boundaries are part of the content
        registry.resolve(LabelSet.from_dict({"a": "bc"})),
        registry.resolve(LabelSet.from_dict({"ab": "c"})),
    }
    assert len(refs) == 5


def test_lookup():
    registry = SeriesRegistry()
    labels = LabelSet.from_dict({"name": "my-app"}, metric_name="m")
    ref = registry.resolve(labels)

    assert ref in registry
    assert registry.lookup(ref) == labels
    assert registry.lookup(ref).get("name") == "my-app"


def test_unknown_ref_returns_empty_labels():
    registry = SeriesRegistry()
    missing = registry.lookup(42)

    assert missing == EMPTY_LABELS
    assert not missing
    assert missing.get("name") == ""


def test_refs_match_across_registries():
    """References depend on content only, not on registry instance."""
    labels = LabelSet.from_dict({"name": "x"}, metric_name="m")
    assert SeriesRegistry().resolve(labels) == SeriesRegistry().resolve(labels) == series_ref(labels)


def test_clear():
    registry = SeriesRegistry()
    ref = registry.resolve(LabelSet.from_dict({"name": "x"}, metric_name="m"))
    registry.clear()

    assert len(registry) == 0
    assert registry.lookup(ref) == EMPTY_LABELS


def test_ref_is_64_bit():
    ref = series_ref(LabelSet.from_dict({"name": "x"}, metric_name="m"))
    assert 0 <= ref < 2 ** 64
