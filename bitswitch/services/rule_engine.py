"""Feature Flag Rule Engine.

Evaluates targeting rules to decide, ahead of the flag's rollout, whether a
request is force-included, force-excluded or handed to a rule-level
percentage sub-rollout.

Rules are checked in listed order and the first rule whose conditions all
hold wins. Each condition declares the data type of the attribute it reads
and the operator is dispatched over that type. An attribute missing from
the context makes the condition false, whatever the operator.

Usage:
    from bitswitch.services.rule_engine import TargetingRule, UserContext, rule_engine

    ctx = UserContext.from_dict({"userId": "user-123", "country": "IN"})
    outcome = rule_engine.match_rules(rules, ctx)
    if outcome.force == RuleForce.EXCLUDE:
        ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from bitswitch.core.logging import get_logger
from packaging.version import InvalidVersion, Version

logger = get_logger(__name__)


# ============================================================================
# Type Definitions
# ============================================================================


class AttributeType(str, Enum):
    """Declared data type of a targeting attribute."""

    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    SEMVER = "SEMVER"
    ARRAY = "ARRAY"


class Operator(str, Enum):
    """Supported operators for targeting conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    GREATER_THAN = "greater_than"
    GREATER_THAN_EQUAL = "greater_than_equal"
    LESS_THAN = "less_than"
    LESS_THAN_EQUAL = "less_than_equal"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"
    BEFORE = "before"
    AFTER = "after"
    BEFORE_OR_EQUAL = "before_or_equal"
    AFTER_OR_EQUAL = "after_or_equal"
    CONTAINS_ANY = "contains_any"
    CONTAINS_ALL = "contains_all"
    HAS_LENGTH = "has_length"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


_ORDERING = frozenset(
    {Operator.EQUALS, Operator.NOT_EQUALS, Operator.GREATER_THAN, Operator.GREATER_THAN_EQUAL}
    | {Operator.LESS_THAN, Operator.LESS_THAN_EQUAL}
)

OPERATORS_BY_TYPE: Dict[AttributeType, FrozenSet[Operator]] = {
    AttributeType.STRING: frozenset(
        {
            Operator.EQUALS,
            Operator.NOT_EQUALS,
            Operator.IN,
            Operator.NOT_IN,
            Operator.CONTAINS,
            Operator.NOT_CONTAINS,
            Operator.STARTS_WITH,
            Operator.ENDS_WITH,
            Operator.MATCHES_REGEX,
        }
    ),
    AttributeType.NUMBER: _ORDERING | {Operator.IN, Operator.NOT_IN},
    AttributeType.BOOLEAN: frozenset({Operator.IS_TRUE, Operator.IS_FALSE}),
    AttributeType.DATE: frozenset(
        {
            Operator.EQUALS,
            Operator.NOT_EQUALS,
            Operator.BEFORE,
            Operator.AFTER,
            Operator.BEFORE_OR_EQUAL,
            Operator.AFTER_OR_EQUAL,
        }
    ),
    AttributeType.SEMVER: _ORDERING,
    AttributeType.ARRAY: frozenset(
        {
            Operator.CONTAINS,
            Operator.NOT_CONTAINS,
            Operator.CONTAINS_ANY,
            Operator.CONTAINS_ALL,
            Operator.HAS_LENGTH,
            Operator.IS_EMPTY,
            Operator.IS_NOT_EMPTY,
        }
    ),
}

# Attributes every SDK context may carry, with their declared types
BASE_ATTRIBUTES: Dict[str, AttributeType] = {
    "email": AttributeType.STRING,
    "country": AttributeType.STRING,
    "region": AttributeType.STRING,
    "ip": AttributeType.STRING,
    "userId": AttributeType.STRING,
    "timestamp": AttributeType.DATE,
}


def is_valid_operator(attribute_type: str, operator: str) -> bool:
    """Check an operator is allowed for a declared attribute type."""
    try:
        return Operator(operator) in OPERATORS_BY_TYPE[AttributeType(attribute_type)]
    except ValueError:
        return False


@dataclass
class UserContext:
    """Request context a flag is evaluated against.

    Attributes:
        user_id: Stable user identifier used for bucketing
        email: User's email address
        country: ISO 3166-1 alpha-2 country code
        region: Region name
        ip: Client IP address
        timestamp: Request timestamp (ISO-8601 string or datetime)
        custom_attributes: Any other attributes sent by the SDK
    """

    user_id: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    ip: Optional[str] = None
    timestamp: Optional[Any] = None
    custom_attributes: Dict[str, Any] = field(default_factory=dict)

    _FIELD_BY_ATTRIBUTE = {
        "userId": "user_id",
        "user_id": "user_id",
        "email": "email",
        "country": "country",
        "region": "region",
        "ip": "ip",
        "timestamp": "timestamp",
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserContext":
        """Build a context from the SDK's camelCase ``userContext`` mapping."""
        data = dict(data or {})
        known = {}
        for key in list(data.keys()):
            field_name = cls._FIELD_BY_ATTRIBUTE.get(key)
            if field_name is not None:
                known[field_name] = data.pop(key)
        user_id = known.get("user_id")
        if user_id is not None:
            known["user_id"] = str(user_id)
        return cls(custom_attributes=data, **known)

    @property
    def identity(self) -> str:
        """Stable identity for bucketing.

        Falls back to email, then IP, for anonymous traffic. An empty string
        is still a valid (shared) identity.
        """
        for candidate in (self.user_id, self.email, self.ip):
            if candidate:
                return str(candidate)
        return ""

    def get_attribute(self, attribute: str) -> Any:
        """Get an attribute value from the context.

        Args:
            attribute: Base attribute name (userId, email, ...) or custom key

        Returns:
            Attribute value or None if absent
        """
        field_name = self._FIELD_BY_ATTRIBUTE.get(attribute)
        if field_name is not None:
            return getattr(self, field_name)
        return self.custom_attributes.get(attribute)


@dataclass
class TargetingCondition:
    """A single typed targeting condition."""

    attribute_name: str
    attribute_type: str
    operator: str
    attribute_values: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetingCondition":
        values = data.get("attribute_values", data.get("attributeValues", []))
        if values is None:
            values = []
        elif not isinstance(values, list):
            values = [values]
        attribute_name = data.get("attribute_name", data.get("attributeName", ""))
        attribute_type = data.get("attribute_type", data.get("attributeType"))
        if not attribute_type:
            attribute_type = BASE_ATTRIBUTES.get(attribute_name, AttributeType.STRING).value
        return cls(
            attribute_name=attribute_name,
            attribute_type=str(attribute_type).upper(),
            operator=data.get("operator_selected", data.get("operator", Operator.EQUALS.value)),
            attribute_values=values,
        )


class RuleForce(str, Enum):
    """What a matched rule does to the request."""

    INCLUDE = "include"
    EXCLUDE = "exclude"
    NONE = "none"


@dataclass
class TargetingRule:
    """A targeting rule: conditions (AND) plus the action taken on match.

    A rule with ``percentage`` set runs its own sub-rollout; otherwise
    ``force`` decides, defaulting to include.
    """

    id: str
    name: str
    conditions: List[TargetingCondition]
    force: Optional[str] = None
    percentage: Optional[float] = None
    value: Optional[Any] = None
    variation_id: Optional[str] = None
    is_enabled: bool = True
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetingRule":
        conditions = [TargetingCondition.from_dict(c) for c in data.get("conditions") or []]
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            conditions=conditions,
            force=data.get("force"),
            percentage=data.get("percentage"),
            value=data.get("value"),
            variation_id=data.get("variation_id", data.get("variationId")),
            is_enabled=data.get("is_enabled", data.get("isEnabled", True)),
            description=data.get("description"),
        )


@dataclass
class MatchOutcome:
    """Result of matching a rule list against a context."""

    force: RuleForce = RuleForce.NONE
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    percentage: Optional[float] = None
    value: Optional[Any] = None
    variation_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule_id is not None


# ============================================================================
# Rule Engine Implementation
# ============================================================================


class RuleEngine:
    """Evaluates targeting rules for feature flags.

    Features:
    - Typed operators per attribute type (string, number, boolean, date, semver, array)
    - First-match-wins rule ordering
    - Absent attributes never match
    """

    def evaluate_condition(self, condition: TargetingCondition, user_ctx: UserContext) -> bool:
        """Evaluate a single condition against user context.

        Args:
            condition: The condition to evaluate
            user_ctx: User context with attributes

        Returns:
            True if condition matches, False otherwise
        """
        user_value = user_ctx.get_attribute(condition.attribute_name)
        if user_value is None:
            return False

        if not is_valid_operator(condition.attribute_type, condition.operator):
            logger.warning(
                "unsupported_operator",
                attribute=condition.attribute_name,
                attribute_type=condition.attribute_type,
                operator=condition.operator,
            )
            return False

        attribute_type = AttributeType(condition.attribute_type)
        operator = Operator(condition.operator)
        values = condition.attribute_values

        try:
            if attribute_type == AttributeType.STRING:
                return self._compare_string(operator, user_value, values)
            if attribute_type == AttributeType.NUMBER:
                return self._compare_number(operator, user_value, values)
            if attribute_type == AttributeType.BOOLEAN:
                return self._compare_boolean(operator, user_value)
            if attribute_type == AttributeType.DATE:
                return self._compare_date(operator, user_value, values)
            if attribute_type == AttributeType.SEMVER:
                return self._compare_semver(operator, user_value, values)
            return self._compare_array(operator, user_value, values)
        except (TypeError, ValueError, OverflowError, OSError, re.error) as e:
            logger.debug(
                "condition_evaluation_error",
                attribute=condition.attribute_name,
                operator=condition.operator,
                error=str(e),
            )
            return False

    def _compare_string(self, operator: Operator, user_value: Any, values: List[Any]) -> bool:
        actual = str(user_value).lower()
        targets = [str(v).lower() for v in values]

        if operator in (Operator.EQUALS, Operator.IN):
            return actual in targets
        if operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return bool(targets) and actual not in targets
        if operator == Operator.CONTAINS:
            return any(t in actual for t in targets)
        if operator == Operator.NOT_CONTAINS:
            return bool(targets) and not any(t in actual for t in targets)
        if operator == Operator.STARTS_WITH:
            return any(actual.startswith(t) for t in targets)
        if operator == Operator.ENDS_WITH:
            return any(actual.endswith(t) for t in targets)
        # matches_regex
        return any(re.search(str(pattern), str(user_value), re.IGNORECASE) for pattern in values)

    def _compare_number(self, operator: Operator, user_value: Any, values: List[Any]) -> bool:
        actual = _to_number(user_value)
        targets = [_to_number(v) for v in values]

        if operator in (Operator.EQUALS, Operator.IN):
            return actual in targets
        if operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return bool(targets) and actual not in targets
        return _compare_ordered(operator, actual, targets)

    def _compare_boolean(self, operator: Operator, user_value: Any) -> bool:
        actual = _to_bool(user_value)
        return actual if operator == Operator.IS_TRUE else not actual

    def _compare_date(self, operator: Operator, user_value: Any, values: List[Any]) -> bool:
        actual = _to_datetime(user_value)
        targets = [_to_datetime(v) for v in values]

        if operator == Operator.EQUALS:
            return actual in targets
        if operator == Operator.NOT_EQUALS:
            return bool(targets) and actual not in targets
        if not targets:
            return False
        target = targets[0]
        if operator == Operator.BEFORE:
            return actual < target
        if operator == Operator.AFTER:
            return actual > target
        if operator == Operator.BEFORE_OR_EQUAL:
            return actual <= target
        return actual >= target

    def _compare_semver(self, operator: Operator, user_value: Any, values: List[Any]) -> bool:
        """Compare semantic versions using the packaging library.

        Handles prerelease versions (e.g., 1.0.0-alpha < 1.0.0) and
        build metadata according to PEP 440 / SemVer.
        """
        actual = self._parse_version(str(user_value))
        targets = [self._parse_version(str(v)) for v in values]
        if actual is None or any(t is None for t in targets):
            logger.debug("semver_parse_failed", user_version=user_value, target_versions=values)
            return False

        if operator == Operator.EQUALS:
            return actual in targets
        if operator == Operator.NOT_EQUALS:
            return bool(targets) and actual not in targets
        return _compare_ordered(operator, actual, targets)

    def _compare_array(self, operator: Operator, user_value: Any, values: List[Any]) -> bool:
        if not isinstance(user_value, (list, tuple, set, frozenset)):
            raise TypeError(f"expected an array attribute, got {type(user_value).__name__}")
        items = {str(v).lower() for v in user_value}
        targets = [str(v).lower() for v in values]

        if operator == Operator.IS_EMPTY:
            return not items
        if operator == Operator.IS_NOT_EMPTY:
            return bool(items)
        if operator == Operator.HAS_LENGTH:
            return bool(values) and len(user_value) == int(values[0])
        if not targets:
            return False
        if operator == Operator.CONTAINS:
            return targets[0] in items
        if operator == Operator.NOT_CONTAINS:
            return targets[0] not in items
        if operator == Operator.CONTAINS_ANY:
            return any(t in items for t in targets)
        # contains_all
        return all(t in items for t in targets)

    def _parse_version(self, version: str) -> Optional[Version]:
        """Parse a version string using the packaging library.

        Handles both SemVer-style (1.2.3-beta+build) and PEP 440 versions.

        Args:
            version: Version string (e.g., "1.2.3", "2.0.0-beta.1", "v1.0.0")

        Returns:
            packaging.version.Version or None if invalid
        """
        version = version.strip().lstrip("vV")
        if not version:
            return None

        try:
            return Version(version)
        except InvalidVersion:
            try:
                return Version(self._semver_to_pep440(version))
            except InvalidVersion:
                return None

    def _semver_to_pep440(self, version: str) -> str:
        """Convert SemVer-style version to PEP 440 format.

        Args:
            version: SemVer string (e.g., "1.0.0-beta.1")

        Returns:
            PEP 440 compatible string (e.g., "1.0.0b1")
        """
        if "-" in version:
            base, prerelease = version.split("-", 1)
            prerelease = prerelease.split("+")[0].lower()

            if prerelease.startswith("alpha"):
                return f"{base}{prerelease.replace('alpha', 'a').replace('.', '')}"
            elif prerelease.startswith("beta"):
                return f"{base}{prerelease.replace('beta', 'b').replace('.', '')}"
            elif prerelease.startswith("rc"):
                return f"{base}{prerelease.replace('.', '')}"
            elif prerelease.startswith("pre"):
                return f"{base}{prerelease.replace('pre', 'rc').replace('.', '')}"
            else:
                # Generic prerelease: use .dev suffix
                return f"{base}.dev0"

        # Remove build metadata only
        return version.split("+")[0]

    def evaluate_rule(self, rule: TargetingRule, user_ctx: UserContext) -> bool:
        """Evaluate a targeting rule against user context.

        All conditions must match (AND logic); a rule without conditions
        always matches.
        """
        return all(self.evaluate_condition(condition, user_ctx) for condition in rule.conditions)

    def match_rules(self, rules: List[TargetingRule], user_ctx: UserContext) -> MatchOutcome:
        """Find the first enabled rule matching the context.

        Args:
            rules: Rules in evaluation order
            user_ctx: User context with attributes

        Returns:
            MatchOutcome; ``force`` is NONE when nothing matched or when the
            matched rule defers to its own percentage sub-rollout
        """
        for rule in rules:
            if not rule.is_enabled:
                continue
            if not self.evaluate_rule(rule, user_ctx):
                continue

            if rule.percentage is not None:
                force = RuleForce.NONE
            elif rule.force and rule.force.lower() == RuleForce.EXCLUDE.value:
                force = RuleForce.EXCLUDE
            else:
                force = RuleForce.INCLUDE

            logger.debug("rule_matched", rule_id=rule.id, rule_name=rule.name, force=force.value)
            return MatchOutcome(
                force=force,
                rule_id=rule.id,
                rule_name=rule.name,
                percentage=rule.percentage,
                value=rule.value,
                variation_id=rule.variation_id,
            )

        return MatchOutcome()


# ============================================================================
# Coercion helpers
# ============================================================================


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    return float(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise ValueError(f"not a boolean: {value!r}")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds, as sent by JS clients
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise TypeError(f"not a date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _compare_ordered(operator: Operator, actual: Any, targets: List[Any]) -> bool:
    if not targets:
        return False
    target = targets[0]
    if operator == Operator.GREATER_THAN:
        return actual > target
    if operator == Operator.GREATER_THAN_EQUAL:
        return actual >= target
    if operator == Operator.LESS_THAN:
        return actual < target
    return actual <= target


# Singleton instance
rule_engine = RuleEngine()
