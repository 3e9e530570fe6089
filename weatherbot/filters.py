"""
Alert filter rules.

Alerts are plain nested dicts (GeoJSON features from the NWS API, or entries
converted from an Atom feed). A filter chain is built once from the
``alerts.filters`` configuration list and then applied to every batch of
fetched alerts:

    chain = FilterChain.from_config([
        {"restriction": "has", "path": "properties.replacedBy", "keep": False},
        {"restriction": "after", "path": "properties.expires", "value": 0, "keep": True},
    ])
    relevant = chain.apply(alerts)

Every rule computes a match and the alert is retained when ``match == keep``.
Configuration mistakes raise ``ValidationError`` while the chain is built;
a date rule pointing at something that is not a date raises ``PathTypeError``
for the whole batch.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import PathTypeError, ValidationError

logger = logging.getLogger(__name__)

PATH_PATTERN = re.compile(r"^[_$a-zA-Z][_$a-zA-Z0-9]*(\.[_$a-zA-Z][_$a-zA-Z0-9]*)*$")

PRIMITIVE_TYPES = (str, int, float, bool, type(None))


class _Absent:
    """Sentinel for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()

_MISSING = object()


def resolve_path(record: Any, path: str) -> Any:
    """Walk ``record`` along a dot-separated ``path``.

    Returns ``ABSENT`` as soon as a segment is missing or the current node
    is not a mapping. A present ``null`` resolves to ``None``.
    """
    node = record
    for segment in path.split("."):
        if not isinstance(node, Mapping) or segment not in node:
            return ABSENT
        node = node[segment]
    return node


def strict_equals(left: Any, right: Any) -> bool:
    """Primitive equality without cross-type coercion (``1 != True != "1"``)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or pass through a datetime. Naive means UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Rules
# =============================================================================

@dataclass(frozen=True)
class FilterRule:
    """A single restriction on alert records."""
    path: str
    keep: bool

    restriction: ClassVar[str] = ""

    def matches(self, record: Any, now: datetime) -> bool:
        raise NotImplementedError

    def retains(self, record: Any, now: datetime) -> bool:
        return self.matches(record, now) == self.keep

    def describe(self) -> str:
        raise NotImplementedError

    def flipped(self) -> "FilterRule":
        """The same rule with opposite keep polarity."""
        fields = dict(self.__dict__)
        fields["keep"] = not self.keep
        return type(self)(**fields)

    @classmethod
    def parse_value(cls, value: Any) -> Dict[str, Any]:
        """Validate the configured value and return the rule's payload fields."""
        return {}


@dataclass(frozen=True)
class HasRule(FilterRule):
    restriction: ClassVar[str] = "has"

    def matches(self, record: Any, now: datetime) -> bool:
        return resolve_path(record, self.path) is not ABSENT

    def describe(self) -> str:
        state = "does not contain" if self.keep else "contains"
        return f"remove all alerts where alert.{self.path} {state} a value"


def _require_primitive(value: Any) -> Any:
    if value is _MISSING:
        raise ValidationError("Filter value missing")
    if not isinstance(value, PRIMITIVE_TYPES):
        raise ValidationError(
            "Filter value cannot be an object or array. Object comparison is not supported."
        )
    return value


@dataclass(frozen=True)
class EqualsRule(FilterRule):
    value: Any = None

    restriction: ClassVar[str] = "equals"

    def matches(self, record: Any, now: datetime) -> bool:
        resolved = resolve_path(record, self.path)
        if resolved is ABSENT:
            return False
        return strict_equals(resolved, self.value)

    def describe(self) -> str:
        verb = "not equal" if self.keep else "equal"
        return f"remove all alerts with values at alert.{self.path} {verb} to {self.value!r}"

    @classmethod
    def parse_value(cls, value: Any) -> Dict[str, Any]:
        return {"value": _require_primitive(value)}


@dataclass(frozen=True)
class ContainsRule(FilterRule):
    value: Any = None

    restriction: ClassVar[str] = "contains"

    def matches(self, record: Any, now: datetime) -> bool:
        resolved = resolve_path(record, self.path)
        if not isinstance(resolved, list):
            return False
        return any(strict_equals(item, self.value) for item in resolved)

    def describe(self) -> str:
        state = "not containing" if self.keep else "containing"
        return f"remove all alerts with arrays at alert.{self.path} {state} the value {self.value!r}"

    @classmethod
    def parse_value(cls, value: Any) -> Dict[str, Any]:
        return {"value": _require_primitive(value)}


@dataclass(frozen=True)
class MatchesRule(FilterRule):
    pattern: Optional[re.Pattern] = None

    restriction: ClassVar[str] = "matches"

    def matches(self, record: Any, now: datetime) -> bool:
        resolved = resolve_path(record, self.path)
        if not isinstance(resolved, str):
            return False
        return self.pattern.search(resolved) is not None

    def describe(self) -> str:
        state = "not matching" if self.keep else "matching"
        return f"remove all alerts with strings at alert.{self.path} {state} the regex {self.pattern.pattern}"

    @classmethod
    def parse_value(cls, value: Any) -> Dict[str, Any]:
        if value is _MISSING:
            raise ValidationError("Filter value missing")
        if not isinstance(value, str):
            raise ValidationError("Filter value must be a string.")
        try:
            return {"pattern": re.compile(value)}
        except re.error as e:
            raise ValidationError(f"Filter value is invalid regex: {e}")


@dataclass(frozen=True)
class _TimeRule(FilterRule):
    hours: float = 0.0

    def threshold(self, now: datetime) -> datetime:
        return now + timedelta(hours=self.hours)

    def resolve_time(self, record: Any) -> datetime:
        resolved = resolve_path(record, self.path)
        parsed = parse_datetime(resolved)
        if parsed is None:
            raise PathTypeError(
                f"Path {self.path} of '{self.restriction}' filter leads to an invalid date: {resolved!r}"
            )
        return parsed

    @classmethod
    def parse_value(cls, value: Any) -> Dict[str, Any]:
        if value is _MISSING:
            raise ValidationError("Filter value missing")
        if isinstance(value, bool):
            raise ValidationError("Filter value not a number.")
        try:
            hours = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Filter value not a number.")
        if not math.isfinite(hours):
            raise ValidationError("Filter value not a number.")
        return {"hours": hours}


@dataclass(frozen=True)
class AfterRule(_TimeRule):
    restriction: ClassVar[str] = "after"

    def matches(self, record: Any, now: datetime) -> bool:
        return self.resolve_time(record) > self.threshold(now)

    def describe(self) -> str:
        state = "before" if self.keep else "after"
        return (f"remove all alerts with dates at alert.{self.path} that are {state} "
                f"the time when alerts are fetched + {self.hours:g} hour(s)")


@dataclass(frozen=True)
class BeforeRule(_TimeRule):
    restriction: ClassVar[str] = "before"

    def matches(self, record: Any, now: datetime) -> bool:
        return self.resolve_time(record) < self.threshold(now)

    def describe(self) -> str:
        state = "after" if self.keep else "before"
        return (f"remove all alerts with dates at alert.{self.path} that are {state} "
                f"the time when alerts are fetched + {self.hours:g} hour(s)")


RESTRICTIONS = {
    rule.restriction: rule
    for rule in (AfterRule, BeforeRule, ContainsRule, EqualsRule, HasRule, MatchesRule)
}


def build_rule(config: Mapping[str, Any], index: Optional[int] = None) -> FilterRule:
    """Build one rule from its ``{restriction, path, value, keep}`` config."""
    if not isinstance(config, Mapping):
        raise ValidationError("each filter must be an object", index)

    restriction = config.get("restriction")
    if restriction is None:
        raise ValidationError('missing field "restriction"', index)
    if restriction not in RESTRICTIONS:
        raise ValidationError(f"unknown filter restriction: {restriction!r}", index)

    path = config.get("path")
    if not isinstance(path, str) or not PATH_PATTERN.match(path):
        raise ValidationError(f"path {path!r} is not in the format key.key.key", index)

    keep = config.get("keep")
    if not isinstance(keep, bool):
        raise ValidationError('field "keep" must be a boolean', index)

    rule_cls = RESTRICTIONS[restriction]
    try:
        payload = rule_cls.parse_value(config.get("value", _MISSING))
    except ValidationError as e:
        raise ValidationError(f'invalid "{restriction}" filter. {e}', index)

    return rule_cls(path=path, keep=keep, **payload)


# =============================================================================
# Chain
# =============================================================================

class FilterChain:
    """Conjunction of filter rules applied to batches of alert records."""

    def __init__(self, rules: Iterable[FilterRule] = ()):
        self.rules: Tuple[FilterRule, ...] = tuple(rules)

    @classmethod
    def from_config(cls, filters: Optional[Iterable[Mapping[str, Any]]]) -> "FilterChain":
        """Build a chain from the filter configuration list.

        Raises the first ``ValidationError`` encountered; no rule is skipped.
        """
        if filters is None:
            return cls()
        if isinstance(filters, (str, bytes, Mapping)):
            raise ValidationError("filters must be a list")
        rules = [build_rule(config, i) for i, config in enumerate(filters, start=1)]
        logger.info(f"Built alert filter chain with {len(rules)} rule(s)")
        return cls(rules)

    def apply(self, records: List[Any], now: Optional[datetime] = None) -> List[Any]:
        """Return the records retained by every rule, in input order.

        ``now`` is captured once so every record in the batch is compared
        against the same reference instant.
        """
        if not self.rules:
            return list(records)
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        return [
            record for record in records
            if all(rule.retains(record, now) for rule in self.rules)
        ]

    def describe(self) -> List[str]:
        return [f"Filter #{i} will {rule.describe()}." for i, rule in enumerate(self.rules, start=1)]

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def __repr__(self) -> str:
        return f"FilterChain({list(self.rules)!r})"
