"""Label matchers used by routes and inhibition rules.

A matcher is a tagged predicate over a single label value. Matchers are
evaluated by a small interpreter (``Matcher.matches``) rather than by
dispatching on loosely-typed configuration attributes.

Examples:
    >>> Matcher("severity", MatchType.EQUAL, "critical").matches({"severity": "critical"})
    True
    >>> Matcher("instance", MatchType.REGEX, "db-.*").matches({"instance": "web-1"})
    False
"""

import re
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from enum import Enum


class MatchType(str, Enum):
    """Kinds of label predicates."""

    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"
    EXISTS = "exists"


@dataclass(frozen=True)
class Matcher:
    """A predicate over one label.

    A missing label is treated as the empty string, so ``foo=""`` matches
    alerts without a ``foo`` label. Regular expressions are fully anchored.

    Attributes:
        name: Label name
        type: Predicate kind
        value: Value or pattern to compare against (unused for EXISTS)
    """

    name: str
    type: MatchType
    value: str = ""
    _pattern: re.Pattern | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Validate the label name and compile regular expressions."""
        if not self.name or not self.name.strip():
            raise ValueError("Matcher label name cannot be empty")

        if self.type in (MatchType.REGEX, MatchType.NOT_REGEX):
            try:
                pattern = re.compile(self.value)
            except re.error as e:
                raise ValueError(f"Invalid regex for label '{self.name}': {e}") from e
            object.__setattr__(self, "_pattern", pattern)

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Evaluate the predicate against a label set."""
        value = labels.get(self.name, "")

        evaluators = {
            MatchType.EQUAL: lambda: value == self.value,
            MatchType.NOT_EQUAL: lambda: value != self.value,
            MatchType.REGEX: lambda: self._pattern.fullmatch(value) is not None,
            MatchType.NOT_REGEX: lambda: self._pattern.fullmatch(value) is None,
            MatchType.EXISTS: lambda: value != "",
        }
        return evaluators[self.type]()

    def __str__(self) -> str:
        if self.type is MatchType.EXISTS:
            return f"{self.name} exists"
        return f'{self.name}{self.type.value}"{self.value}"'


def matches_all(matchers: Iterable[Matcher], labels: Mapping[str, str]) -> bool:
    """Return True if every matcher accepts the label set."""
    return all(matcher.matches(labels) for matcher in matchers)


def equal_matchers(match: Mapping[str, str]) -> list[Matcher]:
    """Build EQUAL matchers from a ``{label: value}`` mapping."""
    return [Matcher(name, MatchType.EQUAL, value) for name, value in sorted(match.items())]


def not_equal_matchers(match_not: Mapping[str, str]) -> list[Matcher]:
    """Build NOT_EQUAL matchers from a ``{label: value}`` mapping."""
    return [Matcher(name, MatchType.NOT_EQUAL, value) for name, value in sorted(match_not.items())]


def regex_matchers(match_re: Mapping[str, str]) -> list[Matcher]:
    """Build REGEX matchers from a ``{label: pattern}`` mapping."""
    return [Matcher(name, MatchType.REGEX, pattern) for name, pattern in sorted(match_re.items())]


def not_regex_matchers(match_not_re: Mapping[str, str]) -> list[Matcher]:
    return [Matcher(name, MatchType.NOT_REGEX, pattern) for name, pattern in sorted(match_not_re.items())]


def exists_matchers(names: Iterable[str]) -> list[Matcher]:
    """Build EXISTS matchers for each label name."""
    return [Matcher(name, MatchType.EXISTS) for name in sorted(names)]
