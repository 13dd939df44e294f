"""Flag Evaluation Service.

Request-time evaluation of a flag for a user context. Checks run in order:

1. Flag lookup (FLAG_NOT_FOUND)
2. Kill switch (KILL_SWITCH_ACTIVE)
3. Flag and environment state (FLAG_DISABLED, ENVIRONMENT_DISABLED)
4. Rollout configuration (NO_ROLLOUT_CONFIG)
5. Targeting rules, first match wins (RULE_*)
6. Rollout strategy (ROLLOUT_*)

Evaluation is fail-open: store outages and unexpected errors produce a
result carrying the flag's default value, never an exception.

Usage:
    service = FlagEvaluationService(config_store)
    result = await service.evaluate("new-checkout", "PROD", {"userId": "user-42"})
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union

from bitswitch.core.exceptions import InvalidRolloutConfigError, StoreUnavailableError
from bitswitch.core.logging import get_logger
from bitswitch.core.metrics import flag_evaluation_duration_seconds, flag_evaluations_total
from bitswitch.schemas.evaluation import Environment, EvaluationReason, EvaluationResult
from bitswitch.schemas.rollout import ensure_utc
from bitswitch.services.hashing import BUCKET_COUNT, bucket, is_in_percentage
from bitswitch.services.rollout_evaluator import is_included, is_rollout_active
from bitswitch.services.rule_engine import RuleForce, TargetingRule, UserContext, rule_engine

if TYPE_CHECKING:
    from bitswitch.services.stores import ConfigStore

logger = get_logger(__name__)

VARIATION_SALT = "variation"


class FlagType(str, Enum):
    """Flag value types."""

    BOOLEAN = "BOOLEAN"
    STRING = "STRING"
    NUMBER = "NUMBER"
    JSON = "JSON"
    AB_TEST = "AB_TEST"
    MULTIVARIATE = "MULTIVARIATE"


@dataclass
class FlagVariation:
    """A typed value a multivariate or A/B flag can serve."""

    id: str
    name: str
    value: Any
    weight: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagVariation":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            value=data.get("value"),
            weight=max(0, int(data.get("weight", 0) or 0)),
        )


@dataclass
class FlagDefinition:
    """A flag as seen in one environment.

    Attributes:
        id: Flag id (rollout configs are keyed by it)
        key: Flag key, unique per organization and environment
        flag_type: Value type
        is_active: Global on/off switch
        environment: Environment this definition applies to
        is_environment_active: Per-environment on/off switch
        value: Value served to included requests
        default_value: Value served to everyone else
        variations: Weighted variations for AB_TEST/MULTIVARIATE flags
        rules: Targeting rules in evaluation order
        kill_switch_active: True when an active kill switch covers the flag here
    """

    id: str
    key: str
    flag_type: FlagType = FlagType.BOOLEAN
    is_active: bool = True
    environment: Environment = Environment.PROD
    is_environment_active: bool = True
    value: Any = None
    default_value: Any = None
    variations: List[FlagVariation] = field(default_factory=list)
    rules: List[TargetingRule] = field(default_factory=list)
    kill_switch_active: bool = False
    org_slug: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagDefinition":
        return cls(
            id=str(data["id"]),
            key=data["key"],
            flag_type=FlagType(str(data.get("flag_type", data.get("flagType", FlagType.BOOLEAN.value))).upper()),
            is_active=bool(data.get("is_active", data.get("isActive", True))),
            environment=Environment(data.get("environment", Environment.PROD.value)),
            is_environment_active=bool(data.get("is_environment_active", data.get("isEnvironmentActive", True))),
            value=data.get("value"),
            default_value=data.get("default_value", data.get("defaultValue")),
            variations=[FlagVariation.from_dict(v) for v in data.get("variations") or []],
            rules=[TargetingRule.from_dict(r) for r in data.get("rules") or []],
            kill_switch_active=bool(data.get("kill_switch_active", data.get("killSwitchActive", False))),
            org_slug=data.get("org_slug", data.get("orgSlug")),
        )


def normalize_weights(variations: List[FlagVariation]) -> List[Tuple[FlagVariation, int, int]]:
    """Map variation weights to inclusive bucket ranges.

    For example, weights 50/30/20 give buckets 0-4999, 5000-7999 and
    8000-9999. The last range absorbs rounding so every bucket is covered.
    """
    total_weight = sum(v.weight for v in variations)
    if total_weight == 0:
        return []

    ranges = []
    current_bucket = 0
    for variation in variations:
        if variation.weight <= 0:
            continue
        bucket_share = max(1, int((variation.weight / total_weight) * BUCKET_COUNT))
        start = current_bucket
        end = min(start + bucket_share - 1, BUCKET_COUNT - 1)
        ranges.append((variation, start, end))
        current_bucket = end + 1
        if current_bucket >= BUCKET_COUNT:
            break

    if ranges and ranges[-1][2] < BUCKET_COUNT - 1:
        last, start, _ = ranges[-1]
        ranges[-1] = (last, start, BUCKET_COUNT - 1)
    return ranges


def select_variation(flag: FlagDefinition, identity: str) -> Optional[FlagVariation]:
    """Pick the sticky weighted variation for an identity, if the flag has any."""
    ranges = normalize_weights(flag.variations)
    if not ranges:
        return None
    slot = bucket(flag.key, identity, salt=VARIATION_SALT)
    for variation, start, end in ranges:
        if start <= slot <= end:
            return variation
    return ranges[-1][0]


class FlagEvaluationService:
    """Evaluates flags against user contexts."""

    def __init__(self, config_store: "ConfigStore", clock: Optional[Callable[[], datetime]] = None):
        self.config_store = config_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(
        self,
        flag_key: str,
        environment: Union[Environment, str],
        user_context: Union[UserContext, Dict[str, Any], None] = None,
        org_slug: Optional[str] = None,
    ) -> EvaluationResult:
        """Evaluate a flag. Never raises.

        Args:
            flag_key: Flag key
            environment: DEV, STAGING, PROD or TEST
            user_context: SDK context mapping or a UserContext
            org_slug: Organization scope

        Returns:
            EvaluationResult with the served value and the reason
        """
        start_time = time.perf_counter()
        env_label = str(getattr(environment, "value", environment))

        try:
            result = await self._evaluate(flag_key, Environment(environment), user_context, org_slug)
        except StoreUnavailableError as e:
            logger.warning("flag_evaluation_store_unavailable", flag_key=flag_key, environment=env_label, error=str(e))
            result = self._result(flag_key, env_label, EvaluationReason.STORE_UNAVAILABLE)
        except Exception as e:
            logger.error(
                "flag_evaluation_error",
                flag_key=flag_key,
                environment=env_label,
                error=str(e),
                exc_info=True,
            )
            result = self._result(flag_key, env_label, EvaluationReason.EVALUATION_ERROR)

        flag_evaluations_total.labels(environment=env_label, reason=result.reason.value).inc()
        flag_evaluation_duration_seconds.observe(time.perf_counter() - start_time)
        return result

    async def _evaluate(
        self,
        flag_key: str,
        environment: Environment,
        user_context: Union[UserContext, Dict[str, Any], None],
        org_slug: Optional[str],
    ) -> EvaluationResult:
        ctx = user_context if isinstance(user_context, UserContext) else UserContext.from_dict(user_context)
        now = ensure_utc(self._clock())

        flag = await self.config_store.get_flag(org_slug, flag_key, environment)
        if flag is None:
            return self._result(flag_key, environment, EvaluationReason.FLAG_NOT_FOUND)

        if flag.kill_switch_active:
            return self._result(flag_key, environment, EvaluationReason.KILL_SWITCH_ACTIVE, flag)
        if not flag.is_active:
            return self._result(flag_key, environment, EvaluationReason.FLAG_DISABLED, flag)
        if not flag.is_environment_active:
            return self._result(flag_key, environment, EvaluationReason.ENVIRONMENT_DISABLED, flag)

        try:
            config = await self.config_store.get_rollout_config(flag.id)
        except InvalidRolloutConfigError as e:
            logger.warning("invalid_rollout_config", flag_id=flag.id, flag_key=flag_key, error=str(e))
            config = None
        if config is None:
            return self._result(flag_key, environment, EvaluationReason.NO_ROLLOUT_CONFIG, flag)

        identity = ctx.identity
        outcome = rule_engine.match_rules(flag.rules, ctx)

        if outcome.matched:
            if outcome.force == RuleForce.EXCLUDE:
                return self._result(
                    flag_key, environment, EvaluationReason.RULE_EXCLUDED, flag, rule_matched=outcome.rule_id
                )
            if outcome.force == RuleForce.NONE and not is_in_percentage(
                flag.key, identity, outcome.percentage, salt=outcome.rule_id
            ):
                return self._result(
                    flag_key, environment, EvaluationReason.RULE_ROLLOUT_EXCLUDED, flag, rule_matched=outcome.rule_id
                )
            return self._served(
                flag,
                environment,
                identity,
                EvaluationReason.RULE_MATCHED,
                rule_matched=outcome.rule_id,
                value_override=outcome.value,
                variation_override=outcome.variation_id,
            )

        if not is_rollout_active(config, now):
            return self._result(flag_key, environment, EvaluationReason.ROLLOUT_NOT_ACTIVE, flag)
        if is_included(config, flag.key, identity, now):
            return self._served(flag, environment, identity, EvaluationReason.ROLLOUT_INCLUDED)
        return self._result(flag_key, environment, EvaluationReason.ROLLOUT_EXCLUDED, flag)

    def _served(
        self,
        flag: FlagDefinition,
        environment: Environment,
        identity: str,
        reason: EvaluationReason,
        rule_matched: Optional[str] = None,
        value_override: Any = None,
        variation_override: Optional[str] = None,
    ) -> EvaluationResult:
        value = flag.value
        variation_id = None

        if variation_override is not None:
            chosen = next((v for v in flag.variations if v.id == variation_override), None)
            if chosen is not None:
                value, variation_id = chosen.value, chosen.id
        elif flag.variations:
            chosen = select_variation(flag, identity)
            if chosen is not None:
                value, variation_id = chosen.value, chosen.id

        if value_override is not None:
            value = value_override
        if value is None and flag.flag_type == FlagType.BOOLEAN:
            value = True

        return EvaluationResult(
            flag_key=flag.key,
            environment=environment.value,
            value=value,
            default_value=flag.default_value,
            enabled=True,
            rule_matched=rule_matched,
            reason=reason,
            variation_id=variation_id,
        )

    @staticmethod
    def _result(
        flag_key: str,
        environment: Any,
        reason: EvaluationReason,
        flag: Optional[FlagDefinition] = None,
        rule_matched: Optional[str] = None,
    ) -> EvaluationResult:
        default_value = flag.default_value if flag is not None else None
        return EvaluationResult(
            flag_key=flag_key,
            environment=str(getattr(environment, "value", environment)),
            value=default_value,
            default_value=default_value,
            enabled=False,
            rule_matched=rule_matched,
            reason=reason,
        )
