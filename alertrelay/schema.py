"""Routing configuration schema.

The configuration mirrors the alert-manager layout it replaces: a
``global`` block, a routing tree under ``route``, a list of ``receivers``
and a list of ``inhibit_rules``. Parsing and type checks are done by
pydantic; ``build_runtime`` then turns the parsed models into the runtime
objects the engine works with and reports every semantic problem at once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator

from .durations import parse_duration
from .errors import ConfigValidationError
from .inhibition import InhibitionEngine
from .inhibition import InhibitionRule
from .matchers import Matcher
from .matchers import equal_matchers
from .matchers import exists_matchers
from .matchers import not_equal_matchers
from .matchers import not_regex_matchers
from .matchers import regex_matchers
from .notifiers import NOTIFIER_TYPES
from .notifiers import Receiver
from .routing import DEFAULT_GROUP_INTERVAL
from .routing import DEFAULT_GROUP_WAIT
from .routing import DEFAULT_REPEAT_INTERVAL
from .routing import Route
from .routing import RoutingTree

DEFAULT_RESOLVE_TIMEOUT = "5m"


class RouteConfig(BaseModel):
    """A routing tree node as written in the configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    receiver: str | None = None
    match: dict[str, str] = Field(default_factory=dict)
    match_re: dict[str, str] = Field(default_factory=dict)
    match_not: dict[str, str] = Field(default_factory=dict)
    match_not_re: dict[str, str] = Field(default_factory=dict)
    exists: list[str] = Field(default_factory=list)
    group_by: list[str] | None = None
    group_wait: str | None = None
    group_interval: str | None = None
    repeat_interval: str | None = None
    severity_repeat_intervals: dict[str, str] = Field(default_factory=dict)
    continue_matching: bool = Field(False, alias="continue")
    routes: list[RouteConfig] = Field(default_factory=list)


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    send_resolved: bool = True
    max_alerts: int = Field(0, ge=0)
    auth_header: str | None = None
    timeout: float = Field(10.0, gt=0)


class DiscordConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    webhook_url: str
    send_resolved: bool = True
    message: str = ""
    timeout: float = Field(10.0, gt=0)


class SlackConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_url: str
    channel: str | None = None
    username: str = "alertrelay"
    send_resolved: bool = False
    timeout: float = Field(10.0, gt=0)


class ReceiverConfig(BaseModel):
    """A named receiver and its notifier configurations."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    webhook_configs: list[WebhookConfig] = Field(default_factory=list)
    discord_configs: list[DiscordConfig] = Field(default_factory=list)
    slack_configs: list[SlackConfig] = Field(default_factory=list)


class InhibitRuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_match: dict[str, str] = Field(default_factory=dict)
    source_match_re: dict[str, str] = Field(default_factory=dict)
    source_match_not: dict[str, str] = Field(default_factory=dict)
    source_match_not_re: dict[str, str] = Field(default_factory=dict)
    target_match: dict[str, str] = Field(default_factory=dict)
    target_match_re: dict[str, str] = Field(default_factory=dict)
    target_match_not: dict[str, str] = Field(default_factory=dict)
    target_match_not_re: dict[str, str] = Field(default_factory=dict)
    equal: list[str] = Field(default_factory=list)


class GlobalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolve_timeout: str = DEFAULT_RESOLVE_TIMEOUT


class EngineConfig(BaseModel):
    """Complete routing configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    route: RouteConfig
    receivers: list[ReceiverConfig] = Field(default_factory=list)
    inhibit_rules: list[InhibitRuleConfig] = Field(default_factory=list)

    @field_validator("receivers")
    @classmethod
    def validate_unique_receivers(cls, v: list[ReceiverConfig]) -> list[ReceiverConfig]:
        """Reject duplicate receiver names."""
        seen = set()
        for receiver in v:
            if receiver.name in seen:
                raise ValueError(f"Duplicate receiver name: {receiver.name}")
            seen.add(receiver.name)
        return v


@dataclass
class RuntimeConfig:
    """Validated configuration, swapped in as one unit on reload.

    Attributes:
        tree: Routing tree
        inhibitor: Inhibition rules
        receivers: Receiver registry by name
        resolve_timeout: How long a firing alert without heartbeat stays firing
        source: The configuration this was built from
    """

    tree: RoutingTree
    inhibitor: InhibitionEngine
    receivers: dict[str, Receiver]
    resolve_timeout: timedelta
    source: EngineConfig


def load_config(data: dict[str, Any] | str | bytes) -> EngineConfig:
    """Parse a configuration mapping or JSON document.

    Raises:
        ConfigValidationError: If the document does not fit the schema
    """
    try:
        if isinstance(data, (str, bytes)):
            return EngineConfig.model_validate_json(data)
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigValidationError(problems) from e


def build_runtime(config: EngineConfig, client: httpx.AsyncClient | None = None) -> RuntimeConfig:
    """Validate a configuration and build its runtime objects.

    Args:
        config: Parsed configuration
        client: Optional shared HTTP client for notifiers

    Raises:
        ConfigValidationError: With every problem found
    """
    problems: list[str] = []

    receivers = _build_receivers(config.receivers, client)
    root = _build_route(config.route, None, "0", problems)

    if root is not None:
        tree = RoutingTree(root)
        for route in tree.walk():
            if route.receiver not in receivers:
                problems.append(f"route {route.id}: unknown receiver '{route.receiver}'")
    else:
        tree = None

    rules = []
    for index, rule_config in enumerate(config.inhibit_rules):
        rule = _build_inhibit_rule(rule_config, index, problems)
        if rule is not None:
            rules.append(rule)

    try:
        resolve_timeout = parse_duration(config.global_.resolve_timeout)
    except ValueError as e:
        problems.append(f"global.resolve_timeout: {e}")
        resolve_timeout = timedelta(0)

    if problems:
        raise ConfigValidationError(problems)

    return RuntimeConfig(
        tree=tree,
        inhibitor=InhibitionEngine(rules),
        receivers=receivers,
        resolve_timeout=resolve_timeout,
        source=config,
    )


def _build_matchers(
    where: str,
    problems: list[str],
    match: dict[str, str],
    match_re: dict[str, str],
    match_not: dict[str, str],
    match_not_re: dict[str, str],
    exists: list[str] | None = None,
) -> list[Matcher]:
    try:
        return (
            equal_matchers(match)
            + regex_matchers(match_re)
            + not_equal_matchers(match_not)
            + not_regex_matchers(match_not_re)
            + exists_matchers(exists or [])
        )
    except ValueError as e:
        problems.append(f"{where}: {e}")
        return []


def _duration(value: str | None, fallback: timedelta, where: str, problems: list[str]) -> timedelta:
    if value is None:
        return fallback
    try:
        return parse_duration(value)
    except ValueError as e:
        problems.append(f"{where}: {e}")
        return fallback


def _build_route(cfg: RouteConfig, parent: Route | None, route_id: str, problems: list[str]) -> Route | None:
    where = f"route {route_id}"
    receiver = cfg.receiver or (parent.receiver if parent else None)
    if not receiver:
        problems.append(f"{where}: no receiver configured and no parent to inherit one from")
        return None

    matchers = _build_matchers(
        where, problems, cfg.match, cfg.match_re, cfg.match_not, cfg.match_not_re, cfg.exists
    )

    group_wait = _duration(cfg.group_wait, parent.group_wait if parent else DEFAULT_GROUP_WAIT, where, problems)
    group_interval = _duration(
        cfg.group_interval, parent.group_interval if parent else DEFAULT_GROUP_INTERVAL, where, problems
    )
    repeat_interval = _duration(
        cfg.repeat_interval, parent.repeat_interval if parent else DEFAULT_REPEAT_INTERVAL, where, problems
    )
    if group_interval <= timedelta(0):
        problems.append(f"{where}: group_interval must be positive")
    if repeat_interval <= timedelta(0):
        problems.append(f"{where}: repeat_interval must be positive")

    severity_repeat_intervals = dict(parent.severity_repeat_intervals) if parent else {}
    for severity, value in cfg.severity_repeat_intervals.items():
        severity_repeat_intervals[severity] = _duration(value, repeat_interval, where, problems)

    route = Route(
        id=route_id,
        receiver=receiver,
        matchers=matchers,
        group_by=list(cfg.group_by) if cfg.group_by is not None else list(parent.group_by if parent else []),
        group_wait=group_wait,
        group_interval=group_interval,
        repeat_interval=repeat_interval,
        continue_matching=cfg.continue_matching,
        severity_repeat_intervals=severity_repeat_intervals,
    )

    for index, child_cfg in enumerate(cfg.routes):
        child = _build_route(child_cfg, route, f"{route_id}.{index}", problems)
        if child is not None:
            route.routes.append(child)
    return route


def _build_inhibit_rule(cfg: InhibitRuleConfig, index: int, problems: list[str]) -> InhibitionRule | None:
    where = f"inhibit_rules[{index}]"
    before = len(problems)
    source = _build_matchers(
        f"{where}.source",
        problems,
        cfg.source_match,
        cfg.source_match_re,
        cfg.source_match_not,
        cfg.source_match_not_re,
    )
    target = _build_matchers(
        f"{where}.target",
        problems,
        cfg.target_match,
        cfg.target_match_re,
        cfg.target_match_not,
        cfg.target_match_not_re,
    )
    if len(problems) > before:
        return None

    rule = InhibitionRule(
        source_matchers=tuple(source),
        target_matchers=tuple(target),
        equal=tuple(sorted(set(cfg.equal))),
    )
    if rule.is_self_inhibiting():
        problems.append(f"{where}: every source alert would also be a target, so the rule inhibits itself")
        return None
    return rule


def _build_receivers(configs: list[ReceiverConfig], client: httpx.AsyncClient | None) -> dict[str, Receiver]:
    receivers = {}
    for receiver_cfg in configs:
        notifiers = []
        for field_name, notifier_cls in NOTIFIER_TYPES.items():
            for index, notifier_cfg in enumerate(getattr(receiver_cfg, field_name)):
                name = f"{receiver_cfg.name}/{notifier_cls.kind}/{index}"
                notifiers.append(notifier_cls(name, notifier_cfg.model_dump(), client=client))
        receivers[receiver_cfg.name] = Receiver(receiver_cfg.name, notifiers)
    return receivers
