"""Inhibition rules.

An alert matching a rule's target matchers is inhibited while another,
firing alert matches the rule's source matchers and carries the same values
for every label listed in ``equal``.

Inhibition is evaluated on a snapshot of the active alerts and never chains:
a source only counts if it is not itself inhibited by a different rule on
the same snapshot, and that check looks one hop deep only.
"""

from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

import structlog

from .alerts import Alert
from .alerts import utcnow
from .matchers import Matcher
from .matchers import matches_all

logger = structlog.get_logger()


@dataclass(frozen=True)
class InhibitionRule:
    """Suppress target alerts while a matching source alert fires.

    Attributes:
        source_matchers: Predicates selecting inhibiting alerts
        target_matchers: Predicates selecting alerts that may be inhibited
        equal: Labels whose values must be equal on source and target
    """

    source_matchers: tuple[Matcher, ...]
    target_matchers: tuple[Matcher, ...]
    equal: tuple[str, ...] = field(default_factory=tuple)

    def is_self_inhibiting(self) -> bool:
        """Whether every source alert would also be selected as a target.

        That is the case when the target matchers are a subset of the source
        matchers: any alert satisfying the source side satisfies the target
        side too, so the rule would inhibit its own sources.
        """
        return set(self.target_matchers).issubset(self.source_matchers)

    def source_matches(self, alert: Alert) -> bool:
        return matches_all(self.source_matchers, alert.labels)

    def target_matches(self, alert: Alert) -> bool:
        return matches_all(self.target_matchers, alert.labels)

    def has_equal(self, source: Alert, target: Alert) -> bool:
        return all(source.labels.get(name, "") == target.labels.get(name, "") for name in self.equal)


class InhibitionEngine:
    """Evaluates inhibition rules against a snapshot of active alerts."""

    def __init__(self, rules: Sequence[InhibitionRule] = ()) -> None:
        self.rules = tuple(rules)

    def __len__(self) -> int:
        return len(self.rules)

    def is_inhibited(
        self,
        candidate: Alert,
        active_alerts: Iterable[Alert],
        now: datetime | None = None,
    ) -> bool:
        """Whether ``candidate`` is inhibited by any firing alert.

        Args:
            candidate: Alert that may be suppressed
            active_alerts: Snapshot of current alerts; resolved ones are ignored
            now: Evaluation time

        Returns:
            True if some rule inhibits the candidate
        """
        now = now or utcnow()
        sources = [alert for alert in active_alerts if alert.is_firing(now)]
        return self._inhibiting_rule(candidate, sources, check_sources=True) is not None

    def inhibited(self, active_alerts: Iterable[Alert], now: datetime | None = None) -> set[str]:
        """Fingerprints of every inhibited alert in the snapshot."""
        now = now or utcnow()
        snapshot = list(active_alerts)
        sources = [alert for alert in snapshot if alert.is_firing(now)]
        if not self.rules:
            return set()

        return {
            alert.fingerprint
            for alert in snapshot
            if self._inhibiting_rule(alert, sources, check_sources=True) is not None
        }

    def _inhibiting_rule(
        self,
        candidate: Alert,
        sources: list[Alert],
        check_sources: bool,
        skip_rule: int | None = None,
    ) -> int | None:
        candidate_fp = candidate.fingerprint

        for index, rule in enumerate(self.rules):
            if index == skip_rule or not rule.target_matches(candidate):
                continue

            # A candidate on both sides of a rule must not be inhibited by
            # alerts that are also on both sides, or they would mute each other
            two_sided = rule.source_matches(candidate)

            for source in sources:
                if source.fingerprint == candidate_fp:
                    continue
                if not rule.source_matches(source) or not rule.has_equal(source, candidate):
                    continue
                if two_sided and rule.target_matches(source):
                    continue
                if check_sources and self._inhibiting_rule(
                    source, sources, check_sources=False, skip_rule=index
                ) is not None:
                    continue

                logger.debug(
                    "Alert inhibited",
                    fingerprint=candidate_fp,
                    source=source.fingerprint,
                    rule=index,
                )
                return index
        return None
