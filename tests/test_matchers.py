"""
Tests for label matchers and duration parsing.
"""

from datetime import timedelta

import pytest

from alertrelay.durations import format_duration
from alertrelay.durations import parse_duration
from alertrelay.matchers import Matcher
from alertrelay.matchers import MatchType
from alertrelay.matchers import equal_matchers
from alertrelay.matchers import exists_matchers
from alertrelay.matchers import matches_all
from alertrelay.matchers import not_equal_matchers
from alertrelay.matchers import not_regex_matchers
from alertrelay.matchers import regex_matchers


# =============================================================
# TEST: Durations
# =============================================================

class TestDurations:
    """Test Prometheus-style duration strings."""

    @pytest.mark.parametrize("text,expected", [
        ("30s", timedelta(seconds=30)),
        ("5m", timedelta(minutes=5)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("250ms", timedelta(milliseconds=250)),
        ("2d", timedelta(days=2)),
        ("1w", timedelta(weeks=1)),
        ("0", timedelta(0)),
    ])
    def test_parse(self, text, expected):
        assert parse_duration(text) == expected

    def test_numbers_are_seconds(self):
        assert parse_duration(90) == timedelta(seconds=90)
        assert parse_duration(0.5) == timedelta(milliseconds=500)

    def test_timedelta_passthrough(self):
        assert parse_duration(timedelta(minutes=3)) == timedelta(minutes=3)

    @pytest.mark.parametrize("text", ["", "5", "five minutes", "1h-5m", "m5", "-5m"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)

    def test_negative_number_rejected(self):
        with pytest.raises(ValueError):
            parse_duration(-1)

    def test_format(self):
        assert format_duration(timedelta(hours=1, minutes=30)) == "1h30m"
        assert format_duration(timedelta(0)) == "0s"
        assert format_duration(timedelta(milliseconds=1500)) == "1s500ms"


# =============================================================
# TEST: Matchers
# =============================================================

class TestMatcher:
    """Test single-label predicates."""

    def test_equal(self):
        matcher = Matcher("severity", MatchType.EQUAL, "critical")
        assert matcher.matches({"severity": "critical"})
        assert not matcher.matches({"severity": "warning"})

    def test_not_equal(self):
        matcher = Matcher("severity", MatchType.NOT_EQUAL, "critical")
        assert matcher.matches({"severity": "warning"})
        assert matcher.matches({})
        assert not matcher.matches({"severity": "critical"})

    def test_regex_is_fully_anchored(self):
        matcher = Matcher("instance", MatchType.REGEX, "db-[0-9]+")
        assert matcher.matches({"instance": "db-12"})
        assert not matcher.matches({"instance": "db-12.example"})
        assert not matcher.matches({"instance": "old-db-12"})

    def test_not_regex(self):
        matcher = Matcher("env", MatchType.NOT_REGEX, "prod|staging")
        assert matcher.matches({"env": "dev"})
        assert not matcher.matches({"env": "prod"})

    def test_exists(self):
        matcher = Matcher("team", MatchType.EXISTS)
        assert matcher.matches({"team": "db"})
        assert not matcher.matches({"team": ""})
        assert not matcher.matches({})

    def test_missing_label_is_empty_string(self):
        assert Matcher("team", MatchType.EQUAL, "").matches({"alertname": "X"})

    def test_invalid_regex(self):
        with pytest.raises(ValueError, match="Invalid regex"):
            Matcher("instance", MatchType.REGEX, "db-[")

    def test_empty_name(self):
        with pytest.raises(ValueError):
            Matcher(" ", MatchType.EQUAL, "x")

    def test_matchers_are_hashable_and_comparable(self):
        a = Matcher("severity", MatchType.REGEX, "crit.*")
        b = Matcher("severity", MatchType.REGEX, "crit.*")
        assert a == b
        assert len({a, b}) == 1

    def test_str(self):
        assert str(Matcher("severity", MatchType.EQUAL, "critical")) == 'severity="critical"'
        assert str(Matcher("team", MatchType.EXISTS)) == "team exists"


class TestMatcherBuilders:
    """Test construction from configuration mappings."""

    def test_builders_are_sorted(self):
        matchers = equal_matchers({"b": "2", "a": "1"})
        assert [m.name for m in matchers] == ["a", "b"]

    def test_matches_all(self):
        matchers = (
            equal_matchers({"severity": "critical"})
            + regex_matchers({"instance": "db-.*"})
            + exists_matchers(["team"])
        )
        assert matches_all(matchers, {"severity": "critical", "instance": "db-1", "team": "db"})
        assert not matches_all(matchers, {"severity": "critical", "instance": "db-1"})

    def test_negative_builders(self):
        matchers = not_equal_matchers({"env": "prod"}) + not_regex_matchers({"instance": "db-.*"})
        assert [m.type for m in matchers] == [MatchType.NOT_EQUAL, MatchType.NOT_REGEX]
        assert matches_all(matchers, {"env": "dev", "instance": "web-1"})
        assert not matches_all(matchers, {"env": "prod", "instance": "web-1"})
        assert not matches_all(matchers, {"instance": "db-2"})

    def test_no_matchers_match_everything(self):
        assert matches_all([], {"anything": "goes"})
