"""
Tests for configuration loading, settings and ingestion payload parsing.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from alertrelay.alerts import Alert
from alertrelay.alerts import AlertStatus
from alertrelay.config import Settings
from alertrelay.config import default_config
from alertrelay.engine import AlertEngine
from alertrelay.engine import read_config_file
from alertrelay.errors import ConfigValidationError
from alertrelay.errors import IngestionError
from alertrelay.models import MAX_BATCH_SIZE
from alertrelay.models import parse_batch
from alertrelay.notifiers import DiscordNotifier
from alertrelay.schema import build_runtime
from alertrelay.schema import load_config

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def problems_for(data: dict) -> list[str]:
    with pytest.raises(ConfigValidationError) as exc_info:
        build_runtime(load_config(data))
    return exc_info.value.problems


# =============================================================
# TEST: Default deployment configuration
# =============================================================

class TestDefaultConfig:
    """Test the routing used when no config file is given."""

    @pytest.fixture
    def runtime(self):
        settings = Settings(discord_webhook_url="https://discord.test/api/webhooks/1/abc")
        return build_runtime(load_config(default_config(settings)))

    def test_root_route(self, runtime):
        root = runtime.tree.root
        assert root.receiver == "discord"
        assert root.group_by == ["alertname", "cluster", "service"]
        assert root.group_wait == timedelta(seconds=10)
        assert root.group_interval == timedelta(seconds=10)
        assert root.repeat_interval == timedelta(hours=1)

    def test_severity_routes(self, runtime):
        critical = runtime.tree.get("0.0")
        warning = runtime.tree.get("0.1")
        assert [str(m) for m in critical.matchers] == ['severity="critical"']
        assert critical.repeat_interval == timedelta(minutes=15)
        assert warning.repeat_interval == timedelta(minutes=30)

    def test_discord_receiver(self, runtime):
        notifiers = runtime.receivers["discord"].notifiers
        assert len(notifiers) == 1
        assert isinstance(notifiers[0], DiscordNotifier)
        assert notifiers[0].name == "discord/discord/0"
        assert notifiers[0].send_resolved

    def test_inhibit_rule(self, runtime):
        rule = runtime.inhibitor.rules[0]
        assert rule.equal == ("alertname", "instance")
        assert runtime.resolve_timeout == timedelta(minutes=5)

    def test_without_webhook_url(self):
        runtime = build_runtime(load_config(default_config(Settings(discord_webhook_url=None))))
        assert runtime.receivers["discord"].notifiers == []

    def test_receiver_without_notifiers_is_logged(self):
        with capture_logs() as logs:
            AlertEngine(default_config(Settings(discord_webhook_url=None)))
        warnings = [e for e in logs if e["event"] == "Receiver has no notifiers"]
        assert [(e["log_level"], e["receiver"]) for e in warnings] == [("warning", "discord")]

        with capture_logs() as logs:
            AlertEngine(default_config(Settings(discord_webhook_url="http://discord.test/hook")))
        assert not [e for e in logs if e["event"] == "Receiver has no notifiers"]


# =============================================================
# TEST: Validation
# =============================================================

class TestConfigValidation:
    """Test that invalid configurations are rejected with every problem."""

    def test_unknown_receiver(self):
        problems = problems_for({
            "route": {"receiver": "ops", "routes": [{"match": {"team": "db"}, "receiver": "db"}]},
            "receivers": [{"name": "ops"}],
        })
        assert problems == ["route 0.0: unknown receiver 'db'"]

    def test_root_without_receiver(self):
        problems = problems_for({"route": {"group_by": ["alertname"]}, "receivers": [{"name": "ops"}]})
        assert "no receiver" in problems[0]

    def test_all_problems_reported(self):
        problems = problems_for({
            "global": {"resolve_timeout": "soon"},
            "route": {
                "receiver": "ops",
                "group_interval": "0",
                "routes": [{"match_re": {"instance": "db-["}, "group_interval": "1m"}],
            },
            "receivers": [{"name": "ops"}],
        })
        assert len(problems) == 3
        assert any("group_interval must be positive" in p for p in problems)
        assert any("Invalid regex" in p for p in problems)
        assert any("resolve_timeout" in p for p in problems)

    def test_invalid_duration(self):
        problems = problems_for({"route": {"receiver": "ops", "group_wait": "ten"}, "receivers": [{"name": "ops"}]})
        assert "Invalid duration" in problems[0]

    def test_duplicate_receivers(self):
        with pytest.raises(ConfigValidationError, match="Duplicate receiver name"):
            load_config({"route": {"receiver": "ops"}, "receivers": [{"name": "ops"}, {"name": "ops"}]})

    def test_unknown_field(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config({"route": {"receiver": "ops", "mtach": {"a": "b"}}, "receivers": [{"name": "ops"}]})
        assert any("mtach" in p for p in exc_info.value.problems)

    def test_json_text(self):
        config = load_config('{"route": {"receiver": "ops", "continue": true}, "receivers": [{"name": "ops"}]}')
        assert config.route.continue_matching

    def test_malformed_json(self):
        with pytest.raises(ConfigValidationError):
            load_config("{not json")

    def test_negative_route_matchers(self):
        runtime = build_runtime(load_config({
            "route": {
                "receiver": "ops",
                "routes": [{"receiver": "db", "match_not": {"env": "prod"}, "match_not_re": {"instance": "db-.*"}}],
            },
            "receivers": [{"name": "ops"}, {"name": "db"}],
        }))

        def receivers_for(**labels):
            alert = Alert(labels={"alertname": "X", **labels}, starts_at=NOW, updated_at=NOW)
            return [receiver for _, receiver in runtime.tree.match(alert)]

        assert receivers_for(env="dev", instance="web-1") == ["db"]
        assert receivers_for(instance="web-1") == ["db"]
        assert receivers_for(env="prod", instance="web-1") == ["ops"]
        assert receivers_for(env="dev", instance="db-1") == ["ops"]

    def test_negative_inhibit_matchers(self):
        runtime = build_runtime(load_config({
            "route": {"receiver": "ops"},
            "receivers": [{"name": "ops"}],
            "inhibit_rules": [{
                "source_match": {"alertname": "ClusterDown"},
                "target_match_not": {"alertname": "ClusterDown"},
                "target_match_not_re": {"severity": "critical|page"},
                "equal": ["cluster"],
            }],
        }))
        source = Alert(labels={"alertname": "ClusterDown", "cluster": "A"}, starts_at=NOW, updated_at=NOW)

        def inhibited(**labels):
            alert = Alert(labels={"cluster": "A", **labels}, starts_at=NOW, updated_at=NOW)
            return runtime.inhibitor.is_inhibited(alert, [source, alert], NOW)

        assert inhibited(alertname="InstanceDown", severity="warning")
        assert not inhibited(alertname="InstanceDown", severity="critical")
        assert not inhibited(alertname="ClusterDown", instance="a1")

    def test_invalid_negative_regex(self):
        problems = problems_for({
            "route": {"receiver": "ops", "match_not_re": {"instance": "db-["}},
            "receivers": [{"name": "ops"}],
        })
        assert "Invalid regex" in problems[0]

    def test_read_config_file(self, tmp_path):
        path = tmp_path / "alertrelay.json"
        path.write_text('{"route": {"receiver": "ops"}, "receivers": [{"name": "ops"}]}')
        assert read_config_file(path).route.receiver == "ops"

        with pytest.raises(ConfigValidationError, match="Cannot read config file"):
            read_config_file(tmp_path / "missing.json")


# =============================================================
# TEST: Settings
# =============================================================

class TestSettings:
    """Test service settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ALERTRELAY_PORT", raising=False)
        settings = Settings()
        assert settings.port == 9093
        assert settings.resolve_timeout == "5m"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("ALERTRELAY_PORT", "9094")
        monkeypatch.setenv("ALERTRELAY_GROUP_WAIT", "30s")
        settings = Settings()
        assert settings.port == 9094
        assert settings.group_wait == "30s"

    @pytest.mark.parametrize("field,value", [
        ("port", 0),
        ("log_format", "xml"),
        ("group_wait", "soon"),
        ("max_delivery_attempts", 0),
    ])
    def test_invalid(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})


# =============================================================
# TEST: Ingestion payloads
# =============================================================

class TestParseBatch:
    """Test alert batch validation."""

    def test_status_inferred_from_ends_at(self):
        events = parse_batch([
            {"labels": {"alertname": "A"}},
            {"labels": {"alertname": "B"}, "endsAt": (NOW - timedelta(minutes=1)).isoformat()},
            {"labels": {"alertname": "C"}, "endsAt": (NOW + timedelta(minutes=1)).isoformat()},
        ])
        alerts = [event.to_alert(NOW, timedelta(minutes=5)) for event in events]
        assert [a.status for a in alerts] == [AlertStatus.FIRING, AlertStatus.RESOLVED, AlertStatus.FIRING]
        assert alerts[0].ends_at == NOW + timedelta(minutes=5)
        assert alerts[0].starts_at == NOW
        assert alerts[2].ends_at == NOW + timedelta(minutes=1)

    def test_explicit_resolved_without_end(self):
        event = parse_batch([{"labels": {"alertname": "A"}, "status": "resolved"}])[0]
        alert = event.to_alert(NOW, timedelta(minutes=5))
        assert alert.status is AlertStatus.RESOLVED
        assert alert.ends_at == NOW

    def test_naive_timestamps_are_utc(self):
        event = parse_batch([{"labels": {"alertname": "A"}, "startsAt": "2024-01-01T11:00:00"}])[0]
        assert event.starts_at == NOW - timedelta(hours=1)

    def test_generator_url_kept_as_annotation(self):
        event = parse_batch([{"labels": {"alertname": "A"}, "generatorURL": "http://prom/graph"}])[0]
        assert event.to_alert(NOW, timedelta(minutes=5)).annotations["generator_url"] == "http://prom/graph"

    @pytest.mark.parametrize("batch", [
        {"labels": {"alertname": "A"}},
        [{"annotations": {}}],
        [{"labels": {}}],
        [{"labels": {"bad-name": "x"}}],
        [{"labels": {"alertname": "A"}, "status": "pending"}],
        [{"labels": {"alertname": "A"}, "startsAt": "yesterday"}],
        [{"labels": {"alertname": "A"}, "startsAt": "2024-01-01T12:00:00Z", "endsAt": "2024-01-01T11:00:00Z"}],
    ])
    def test_malformed(self, batch):
        with pytest.raises(IngestionError):
            parse_batch(batch)

    def test_invalid_json(self):
        with pytest.raises(IngestionError):
            parse_batch(b"[{")

    def test_batch_size_limit(self):
        with pytest.raises(IngestionError, match="Batch too large"):
            parse_batch([{"labels": {"alertname": "A"}}] * (MAX_BATCH_SIZE + 1))
