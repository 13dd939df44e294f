"""Rollout Strategy Evaluator.

Turns a rollout configuration into the percentage that is live right now
and decides whether an identity falls inside it. Evaluation is read-only:
progressive configs serve the persisted ``currentStage`` and only the stage
scheduler moves them forward.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from bitswitch.schemas.rollout import (
    CustomProgressiveRollout,
    PercentageRollout,
    ProgressiveRollout,
    RolloutConfig,
    ensure_utc,
)
from bitswitch.services.hashing import is_in_percentage


def is_rollout_active(config: RolloutConfig, now: datetime) -> bool:
    """Whether ``now`` lies inside the rollout's activity window.

    Percentage rollouts are active within ``[startDate, endDate]``,
    progressive rollouts from their ``startDate`` on, and custom progressive
    rollouts always.

    Raises:
        TypeError: If ``config`` is not a known rollout variant
    """
    now = ensure_utc(now)

    if isinstance(config, PercentageRollout):
        if config.start_date is not None and now < config.start_date:
            return False
        return config.end_date is None or now <= config.end_date

    if isinstance(config, ProgressiveRollout):
        return config.start_date is None or config.start_date <= now

    if isinstance(config, CustomProgressiveRollout):
        return True

    raise TypeError(f"Unsupported rollout config: {type(config).__name__}")


def effective_percentage(config: RolloutConfig, now: datetime) -> float:
    """Percentage of identities the config includes at ``now``.

    Raises:
        TypeError: If ``config`` is not a known rollout variant
    """
    if not is_rollout_active(config, now):
        return 0.0

    if isinstance(config, PercentageRollout):
        return config.percentage

    if isinstance(config, ProgressiveRollout):
        return config.current_stage.percentage

    if isinstance(config, CustomProgressiveRollout):
        return config.current_stage.percentage

    raise TypeError(f"Unsupported rollout config: {type(config).__name__}")


def is_included(
    config: RolloutConfig,
    flag_key: str,
    identity: str,
    now: datetime,
    salt: Optional[str] = None,
) -> bool:
    """Check whether ``identity`` is inside the rollout for ``flag_key``.

    Inclusion is monotonic in the percentage: a bucket below the threshold at
    p% is below it for every q >= p.
    """
    return is_in_percentage(flag_key, identity, effective_percentage(config, now), salt=salt)
