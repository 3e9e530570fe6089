"""Tests for path resolution, filter rules and filter chains."""

from datetime import timedelta

import pytest

from weatherbot.errors import PathTypeError, ValidationError
from weatherbot.filters import (
    ABSENT,
    AfterRule,
    FilterChain,
    HasRule,
    build_rule,
    resolve_path,
)

from conftest import NOW, make_alert


@pytest.fixture
def alerts():
    return [
        make_alert("a1", "Tornado Warning"),
        make_alert("a2", "Flood Watch", severity="Moderate", replacedBy="a5"),
        make_alert("a3", "Heat Advisory", severity="Minor", expires=(NOW - timedelta(hours=1)).isoformat()),
        make_alert("a4", "Severe Thunderstorm Warning", geocode={"UGC": ["MOZ042"]}),
    ]


def ids(records):
    return [r["id"] for r in records]


# ── resolve_path ──────────────────────────────────────────────────────────────

class TestResolvePath:
    def test_walks_nested_mappings(self):
        assert resolve_path({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_missing_segment_is_absent(self):
        assert resolve_path({"a": {"b": {}}}, "a.b.c") is ABSENT

    def test_non_mapping_node_is_absent(self):
        assert resolve_path({"a": [1, 2]}, "a.b") is ABSENT
        assert resolve_path({"a": "text"}, "a.b") is ABSENT

    def test_present_null_is_not_absent(self):
        assert resolve_path({"a": None}, "a") is None

    def test_absent_is_falsy_singleton(self):
        assert not ABSENT
        assert type(ABSENT)() is ABSENT


# ── Chain laws ────────────────────────────────────────────────────────────────

class TestChainLaws:
    def test_empty_chain_is_identity(self, alerts):
        assert FilterChain([]).apply(alerts) == alerts
        assert FilterChain.from_config([]).apply(alerts) == alerts
        assert FilterChain.from_config(None).apply(alerts) == alerts

    @pytest.mark.parametrize("config", [
        {"restriction": "has", "path": "properties.replacedBy"},
        {"restriction": "equals", "path": "properties.severity", "value": "Extreme"},
        {"restriction": "contains", "path": "properties.geocode.UGC", "value": "MOC019"},
        {"restriction": "matches", "path": "properties.event", "value": "Warning$"},
        {"restriction": "after", "path": "properties.expires", "value": 0},
        {"restriction": "before", "path": "properties.sent", "value": -0.5},
    ])
    def test_rule_and_its_flipped_twin_remove_everything(self, alerts, config):
        rule = build_rule({**config, "keep": True})
        chain = FilterChain([rule, rule.flipped()])
        assert chain.apply(alerts, now=NOW) == []

    def test_apply_preserves_order(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "matches", "path": "properties.event", "value": "Warning", "keep": True},
        ])
        assert ids(chain.apply(alerts)) == ["a1", "a4"]

    def test_rules_are_a_conjunction(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "has", "path": "properties.replacedBy", "keep": False},
            {"restriction": "contains", "path": "properties.geocode.UGC", "value": "MOC019", "keep": True},
        ])
        assert ids(chain.apply(alerts, now=NOW)) == ["a1", "a3"]

    def test_apply_does_not_mutate_input(self, alerts):
        chain = FilterChain.from_config([{"restriction": "has", "path": "properties.replacedBy", "keep": False}])
        before = ids(alerts)
        chain.apply(alerts)
        assert ids(alerts) == before


# ── Restrictions ──────────────────────────────────────────────────────────────

class TestHas:
    def test_remove_replaced_alerts(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "has", "path": "properties.replacedBy", "keep": False},
        ])
        kept = chain.apply(alerts)
        assert ids(kept) == ["a1", "a3", "a4"]
        assert all(resolve_path(a, "properties.replacedBy") is ABSENT for a in kept)

    def test_value_is_ignored(self, alerts):
        rule = build_rule({"restriction": "has", "path": "properties.replacedBy", "value": 0, "keep": True})
        assert isinstance(rule, HasRule)
        assert ids(FilterChain([rule]).apply(alerts)) == ["a2"]


class TestTimeRestrictions:
    def test_after_keeps_records_later_than_offset(self):
        later = {"id": "x", "properties": {"onset": (NOW + timedelta(hours=10)).isoformat()}}
        sooner = {"id": "y", "properties": {"onset": (NOW + timedelta(hours=5)).isoformat()}}
        chain = FilterChain.from_config([
            {"restriction": "after", "path": "properties.onset", "value": 8, "keep": True},
        ])
        assert chain.apply([later, sooner], now=NOW) == [later]

    def test_before_keeps_records_earlier_than_offset(self):
        later = {"id": "x", "properties": {"onset": (NOW + timedelta(hours=10)).isoformat()}}
        sooner = {"id": "y", "properties": {"onset": (NOW + timedelta(hours=5)).isoformat()}}
        chain = FilterChain.from_config([
            {"restriction": "before", "path": "properties.onset", "value": 8, "keep": True},
        ])
        assert chain.apply([later, sooner], now=NOW) == [sooner]

    def test_negative_offset(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "after", "path": "properties.sent", "value": -8, "keep": True},
        ])
        assert len(chain.apply(alerts, now=NOW)) == len(alerts)

    def test_expired_alerts_are_removed(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "after", "path": "properties.expires", "value": 0, "keep": True},
        ])
        assert "a3" not in ids(chain.apply(alerts, now=NOW))

    def test_boundary_is_strict(self):
        record = {"t": (NOW + timedelta(hours=2)).isoformat()}
        after = FilterChain.from_config([{"restriction": "after", "path": "t", "value": 2, "keep": True}])
        before = FilterChain.from_config([{"restriction": "before", "path": "t", "value": 2, "keep": True}])
        assert after.apply([record], now=NOW) == []
        assert before.apply([record], now=NOW) == []

    def test_zulu_and_datetime_values(self):
        zulu = {"t": (NOW + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")}
        native = {"t": NOW + timedelta(hours=1)}
        chain = FilterChain.from_config([{"restriction": "after", "path": "t", "value": 0.5, "keep": True}])
        assert chain.apply([zulu, native], now=NOW) == [zulu, native]

    def test_invalid_date_aborts_the_batch(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "after", "path": "properties.event", "value": -8, "keep": False},
        ])
        with pytest.raises(PathTypeError):
            chain.apply(alerts)

    def test_missing_date_aborts_the_batch(self):
        chain = FilterChain.from_config([{"restriction": "before", "path": "properties.ends", "value": 1, "keep": True}])
        with pytest.raises(PathTypeError):
            chain.apply([{"properties": {}}])

    def test_numeric_string_value_is_accepted(self):
        rule = build_rule({"restriction": "after", "path": "a.b", "value": "-2.5", "keep": True})
        assert isinstance(rule, AfterRule)
        assert rule.hours == -2.5


class TestEquals:
    def test_strict_equality(self):
        records = [{"v": 1}, {"v": True}, {"v": "1"}, {"v": 1.0}, {}]
        chain = FilterChain.from_config([{"restriction": "equals", "path": "v", "value": 1, "keep": True}])
        assert chain.apply(records) == [{"v": 1}, {"v": 1.0}]

    def test_absent_never_matches(self):
        chain = FilterChain.from_config([{"restriction": "equals", "path": "v", "value": None, "keep": True}])
        assert chain.apply([{}, {"v": None}]) == [{"v": None}]

    def test_keep_false_removes_matches(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "equals", "path": "properties.severity", "value": "Minor", "keep": False},
        ])
        assert "a3" not in ids(chain.apply(alerts))


class TestContains:
    def test_list_membership(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "contains", "path": "properties.geocode.UGC", "value": "MOZ042", "keep": True},
        ])
        assert ids(chain.apply(alerts)) == ["a4"]

    def test_non_list_does_not_match(self):
        chain = FilterChain.from_config([{"restriction": "contains", "path": "v", "value": "a", "keep": True}])
        assert chain.apply([{"v": "abc"}, {"v": ["a"]}, {}]) == [{"v": ["a"]}]


class TestMatches:
    def test_unanchored_search(self, alerts):
        chain = FilterChain.from_config([
            {"restriction": "matches", "path": "properties.headline", "value": "Boone", "keep": True},
        ])
        assert len(chain.apply(alerts)) == len(alerts)

    def test_non_string_does_not_match(self):
        chain = FilterChain.from_config([{"restriction": "matches", "path": "v", "value": ".*", "keep": True}])
        assert chain.apply([{"v": 5}, {"v": ""}]) == [{"v": ""}]


# ── Construction-time validation ──────────────────────────────────────────────

class TestValidation:
    @pytest.mark.parametrize("config", [
        {"restriction": "near", "path": "a", "value": 1, "keep": True},
        {"path": "a", "value": 1, "keep": True},
        {"restriction": "has", "path": "a..b", "keep": True},
        {"restriction": "has", "path": "", "keep": True},
        {"restriction": "has", "path": "1a", "keep": True},
        {"restriction": "has", "path": "a", "keep": "yes"},
        {"restriction": "has", "path": "a"},
        {"restriction": "equals", "path": "a", "keep": True},
        {"restriction": "equals", "path": "a", "value": {"b": 1}, "keep": True},
        {"restriction": "contains", "path": "a", "value": [1], "keep": True},
        {"restriction": "matches", "path": "a", "value": "(unclosed", "keep": True},
        {"restriction": "matches", "path": "a", "value": 3, "keep": True},
        {"restriction": "after", "path": "a", "keep": True},
        {"restriction": "before", "path": "a", "value": "soon", "keep": True},
        {"restriction": "before", "path": "a", "value": True, "keep": True},
        {"restriction": "before", "path": "a", "value": float("nan"), "keep": True},
    ])
    def test_invalid_rule_raises(self, config):
        with pytest.raises(ValidationError):
            FilterChain.from_config([config])

    def test_first_invalid_rule_is_reported(self):
        with pytest.raises(ValidationError) as excinfo:
            FilterChain.from_config([
                {"restriction": "has", "path": "a", "keep": True},
                {"restriction": "matches", "path": "a", "value": "[", "keep": True},
                {"restriction": "bogus", "path": "a", "keep": True},
            ])
        assert excinfo.value.index == 2
        assert "Filter #2" in str(excinfo.value)

    def test_filters_must_be_a_list(self):
        with pytest.raises(ValidationError):
            FilterChain.from_config({"restriction": "has", "path": "a", "keep": True})

    def test_regex_is_compiled_once(self):
        rule = build_rule({"restriction": "matches", "path": "a", "value": "^x", "keep": True})
        assert rule.pattern.pattern == "^x"


def test_describe_lists_every_rule():
    chain = FilterChain.from_config([
        {"restriction": "has", "path": "properties.replacedBy", "keep": False},
        {"restriction": "after", "path": "properties.expires", "value": 2, "keep": True},
    ])
    lines = chain.describe()
    assert len(lines) == 2
    assert lines[0].startswith("Filter #1 will remove all alerts where alert.properties.replacedBy contains")
    assert "+ 2 hour(s)" in lines[1]
