"""
Tests for inhibition rules.
"""

from datetime import datetime
from datetime import timezone

import pytest

from alertrelay.alerts import Alert
from alertrelay.alerts import AlertStatus
from alertrelay.errors import ConfigValidationError
from alertrelay.inhibition import InhibitionEngine
from alertrelay.inhibition import InhibitionRule
from alertrelay.matchers import equal_matchers
from alertrelay.schema import build_runtime
from alertrelay.schema import load_config

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def rule(source: dict, target: dict, equal=()) -> InhibitionRule:
    return InhibitionRule(
        source_matchers=tuple(equal_matchers(source)),
        target_matchers=tuple(equal_matchers(target)),
        equal=tuple(equal),
    )


def firing(**labels) -> Alert:
    return Alert(labels=labels, starts_at=NOW, updated_at=NOW)


def resolved(**labels) -> Alert:
    return Alert(labels=labels, starts_at=NOW, ends_at=NOW, status=AlertStatus.RESOLVED, updated_at=NOW)


@pytest.fixture
def cluster_rule():
    return InhibitionEngine([rule({"alertname": "ClusterDown"}, {"alertname": "InstanceDown"}, equal=["cluster"])])


# =============================================================
# TEST: Basic inhibition
# =============================================================

class TestInhibition:
    """Test source/target/equal evaluation."""

    def test_equal_labels_must_match(self, cluster_rule):
        cluster_a = firing(alertname="ClusterDown", cluster="A")
        instance_a = firing(alertname="InstanceDown", cluster="A", instance="a1")
        instance_b = firing(alertname="InstanceDown", cluster="B", instance="b1")
        active = [cluster_a, instance_a, instance_b]

        assert cluster_rule.is_inhibited(instance_a, active, NOW)
        assert not cluster_rule.is_inhibited(instance_b, active, NOW)
        assert not cluster_rule.is_inhibited(cluster_a, active, NOW)
        assert cluster_rule.inhibited(active, NOW) == {instance_a.fingerprint}

    def test_resolved_source_does_not_inhibit(self, cluster_rule):
        target = firing(alertname="InstanceDown", cluster="A")
        active = [resolved(alertname="ClusterDown", cluster="A"), target]
        assert not cluster_rule.is_inhibited(target, active, NOW)

    def test_missing_equal_label_counts_as_empty(self, cluster_rule):
        source = firing(alertname="ClusterDown")
        target = firing(alertname="InstanceDown", instance="a1")
        assert cluster_rule.is_inhibited(target, [source, target], NOW)

    def test_no_rules(self):
        engine = InhibitionEngine()
        target = firing(alertname="InstanceDown")
        assert not engine.is_inhibited(target, [target], NOW)
        assert engine.inhibited([target], NOW) == set()
        assert len(engine) == 0


# =============================================================
# TEST: Self-inhibition and chaining
# =============================================================

class TestInhibitionSafety:
    """Test that alerts never inhibit themselves and rules never chain."""

    def test_alert_never_inhibits_itself(self):
        engine = InhibitionEngine([rule({"team": "db"}, {"severity": "warning"})])
        both = firing(alertname="X", team="db", severity="warning")
        assert not engine.is_inhibited(both, [both], NOW)

    def test_alerts_on_both_sides_do_not_mute_each_other(self):
        engine = InhibitionEngine([rule({"team": "db"}, {"severity": "warning"})])
        a = firing(alertname="A", team="db", severity="warning")
        b = firing(alertname="B", team="db", severity="warning")
        assert engine.inhibited([a, b], NOW) == set()

    def test_two_sided_candidate_still_inhibited_by_pure_source(self):
        engine = InhibitionEngine([rule({"team": "db"}, {"severity": "warning"})])
        source = firing(alertname="A", team="db", severity="critical")
        both = firing(alertname="B", team="db", severity="warning")
        assert engine.inhibited([source, both], NOW) == {both.fingerprint}

    def test_inhibited_source_does_not_inhibit(self):
        engine = InhibitionEngine([
            rule({"alertname": "A"}, {"alertname": "B"}),
            rule({"alertname": "B"}, {"alertname": "C"}),
        ])
        a, b, c = firing(alertname="A"), firing(alertname="B"), firing(alertname="C")

        assert engine.inhibited([a, b, c], NOW) == {b.fingerprint}
        assert engine.inhibited([b, c], NOW) == {c.fingerprint}

    def test_self_inhibiting_rule_detection(self):
        assert rule({"severity": "critical", "alertname": "X"}, {"severity": "critical"}).is_self_inhibiting()
        assert rule({"severity": "critical"}, {"severity": "critical"}).is_self_inhibiting()
        assert not rule({"severity": "critical"}, {"severity": "warning"}).is_self_inhibiting()

    def test_self_inhibiting_rule_rejected_by_config(self):
        config = load_config({
            "route": {"receiver": "ops"},
            "receivers": [{"name": "ops"}],
            "inhibit_rules": [
                {"source_match": {"severity": "critical", "team": "db"}, "target_match": {"severity": "critical"}},
            ],
        })
        with pytest.raises(ConfigValidationError) as exc_info:
            build_runtime(config)
        assert any("inhibit_rules[0]" in problem for problem in exc_info.value.problems)
