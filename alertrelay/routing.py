"""Routing tree.

Routes form a tree. Evaluation is depth-first and pre-order with sibling
document order authoritative:

- a route whose matchers fail is skipped together with its subtree
- a matched route tries its children in order; the first matching child
  claims the alert, and evaluation only proceeds to later siblings when that
  child has ``continue_matching`` set
- a matched route none of whose children match is itself the match

When several matched routes name the same receiver, the most specific
(deepest) route wins and ties go to document order.
"""

from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta

import structlog

from .alerts import Alert
from .errors import RoutingMiss
from .matchers import Matcher
from .matchers import matches_all

logger = structlog.get_logger()

DEFAULT_GROUP_WAIT = timedelta(seconds=30)
DEFAULT_GROUP_INTERVAL = timedelta(minutes=5)
DEFAULT_REPEAT_INTERVAL = timedelta(hours=4)


@dataclass
class Route:
    """A node of the routing tree with fully resolved (inherited) settings.

    Attributes:
        id: Positional id, ``0`` for the root and ``0.2.1`` for descendants
        receiver: Receiver name
        matchers: Predicates that must all hold for the route to match
        group_by: Label names alerts are grouped by
        group_wait: Delay before the first notification of a new group
        group_interval: Delay before notifying about changes to a group
        repeat_interval: Delay before re-sending an unchanged notification
        continue_matching: Keep evaluating later siblings after a match
        severity_repeat_intervals: Per-severity repeat interval overrides
        routes: Child routes in document order
    """

    id: str
    receiver: str
    matchers: list[Matcher] = field(default_factory=list)
    group_by: list[str] = field(default_factory=list)
    group_wait: timedelta = DEFAULT_GROUP_WAIT
    group_interval: timedelta = DEFAULT_GROUP_INTERVAL
    repeat_interval: timedelta = DEFAULT_REPEAT_INTERVAL
    continue_matching: bool = False
    severity_repeat_intervals: dict[str, timedelta] = field(default_factory=dict)
    routes: list["Route"] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return self.id.count(".")

    def repeat_interval_for(self, severities: Iterable[str]) -> timedelta:
        """Repeat interval for a group firing with the given severities.

        Severity overrides take precedence over the route default; when
        several severities have overrides the shortest one applies.
        """
        overrides = [
            self.severity_repeat_intervals[s] for s in set(severities) if s in self.severity_repeat_intervals
        ]
        return min(overrides) if overrides else self.repeat_interval

    def __str__(self) -> str:
        matchers = ",".join(str(m) for m in self.matchers)
        return f"route[{self.id}]{{{matchers}}} -> {self.receiver}"


class RoutingTree:
    """Resolves the receivers and timing parameters for an alert."""

    def __init__(self, root: Route) -> None:
        self.root = root
        self._by_id = {route.id: route for route in self.walk()}

    def walk(self) -> Iterator[Route]:
        """Yield every route in pre-order."""
        stack = [self.root]
        while stack:
            route = stack.pop()
            yield route
            stack.extend(reversed(route.routes))

    def get(self, route_id: str) -> Route | None:
        return self._by_id.get(route_id)

    def receivers(self) -> set[str]:
        return {route.receiver for route in self.walk()}

    def match(self, alert: Alert) -> list[tuple[Route, str]]:
        """Match an alert against the tree.

        Returns:
            ``(route, receiver)`` pairs in document order, one per distinct
            receiver. Empty if no route matched.
        """
        matched = self._match_labels(self.root, alert.labels)
        return [(route, route.receiver) for route in self._dedupe_receivers(matched)]

    def route(self, alert: Alert) -> list[tuple[Route, str]]:
        """Like ``match`` but raises RoutingMiss when nothing matched."""
        matches = self.match(alert)
        if not matches:
            raise RoutingMiss(alert.fingerprint, alert.labels)
        return matches

    def _match_labels(self, route: Route, labels: Mapping[str, str]) -> list[Route]:
        if not matches_all(route.matchers, labels):
            return []

        matched: list[Route] = []
        for child in route.routes:
            child_matches = self._match_labels(child, labels)
            if not child_matches:
                continue
            matched.extend(child_matches)
            if not child.continue_matching:
                break

        # No child claimed the alert, so this route handles it itself
        if not matched:
            matched.append(route)
        return matched

    @staticmethod
    def _dedupe_receivers(matched: list[Route]) -> list[Route]:
        best: dict[str, tuple[int, Route]] = {}
        for index, route in enumerate(matched):
            current = best.get(route.receiver)
            if current is None or route.depth > current[1].depth:
                best[route.receiver] = (index, route)

        return [route for _, route in sorted(best.values(), key=lambda item: item[0])]
