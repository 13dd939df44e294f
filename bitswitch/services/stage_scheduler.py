"""Progressive Stage Scheduler.

Moves progressive and custom progressive rollouts through their stages as
time passes. Each tick:

1. Lists the flags whose rollout is due (``nextProgressAt <= now``)
2. Reloads each config and re-checks it is still due
3. Computes the next stage cursor, or starts the dwell of a custom stage
   that was entered without a ``nextProgressAt``
4. Persists it with a compare-and-set on the expected current stage

A config advances at most one stage per tick, even when it is several
intervals overdue. The compare-and-set makes concurrent scheduler instances
safe: the loser of a race sees a conflict and leaves the config alone.

Usage:
    scheduler = ProgressiveStageScheduler(config_store)
    report = await scheduler.run_tick()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from bitswitch.core.exceptions import StoreUnavailableError
from bitswitch.core.logging import get_logger
from bitswitch.core.metrics import rollout_current_percentage, rollout_stage_advances_total
from bitswitch.schemas.rollout import (
    CurrentStage,
    CustomProgressiveRollout,
    PercentageRollout,
    ProgressiveRollout,
    RolloutConfig,
    ensure_utc,
)

if TYPE_CHECKING:
    from bitswitch.services.stores import ConfigStore

logger = get_logger(__name__)


def is_progressive(config: RolloutConfig) -> bool:
    if isinstance(config, (ProgressiveRollout, CustomProgressiveRollout)):
        return True
    if isinstance(config, PercentageRollout):
        return False
    raise TypeError(f"Unsupported rollout config: {type(config).__name__}")


def is_terminal(config: RolloutConfig) -> bool:
    """A config is terminal when no further stage exists."""
    if isinstance(config, ProgressiveRollout):
        return config.current_stage.percentage >= config.max_percentage
    if isinstance(config, CustomProgressiveRollout):
        return config.current_stage.stage >= len(config.stages) - 1
    if isinstance(config, PercentageRollout):
        return True
    raise TypeError(f"Unsupported rollout config: {type(config).__name__}")


def is_due(config: RolloutConfig, now: datetime) -> bool:
    """Check whether a progressive config should advance at ``now``.

    Without a ``nextProgressAt`` the first advance waits for the rollout's
    ``startDate`` (progressive) or the next stage's ``stageDate`` (custom),
    and is immediate when neither is set. A custom stage with a ``duration``
    is due at once so the scheduler can start its dwell (see ``stage_start``).
    """
    if not is_progressive(config) or is_terminal(config):
        return False

    now = ensure_utc(now)
    next_progress_at = config.current_stage.next_progress_at
    if next_progress_at is not None:
        return next_progress_at <= now

    if isinstance(config, ProgressiveRollout):
        return config.start_date is None or config.start_date <= now

    upcoming = config.stages[config.current_stage.stage + 1]
    if upcoming.stage_date is not None:
        return upcoming.stage_date <= now
    # Due either to start the current stage's dwell or to advance right away
    return True


def stage_start(config: RolloutConfig, now: datetime) -> Optional[CurrentStage]:
    """Cursor that starts the dwell of a custom stage entered without one.

    A custom rollout whose current stage has a ``duration`` but no
    ``nextProgressAt`` (a freshly saved config) first stays on that stage
    for the duration. Returns None when there is no dwell to start.
    """
    if not isinstance(config, CustomProgressiveRollout) or is_terminal(config):
        return None

    current = config.current_stage
    if current.next_progress_at is not None:
        return None
    stage = config.stages[current.stage]
    upcoming = config.stages[current.stage + 1]
    if upcoming.stage_date is not None or stage.duration is None:
        return None
    return CurrentStage(
        stage=current.stage,
        percentage=current.percentage,
        next_progress_at=ensure_utc(now) + stage.duration.to_timedelta(),
    )


def next_stage(config: RolloutConfig, now: datetime) -> CurrentStage:
    """Compute the cursor one stage after the config's current one.

    The returned percentage is never below the current percentage. The new
    cursor has no ``nextProgressAt`` when it is the final stage.

    Raises:
        ValueError: If the config is already terminal
    """
    if is_terminal(config):
        raise ValueError("Rollout is already at its final stage")

    now = ensure_utc(now)
    current = config.current_stage

    if isinstance(config, ProgressiveRollout):
        stage = current.stage + 1
        percentage = max(current.percentage, config.percentage_for_stage(stage))
        if percentage >= config.max_percentage:
            return CurrentStage(stage=stage, percentage=config.max_percentage)
        return CurrentStage(
            stage=stage,
            percentage=percentage,
            next_progress_at=now + config.frequency.to_timedelta(),
        )

    # CustomProgressiveRollout; the cursor indexes the ordered stage list
    index = current.stage + 1
    target = config.stages[index]
    percentage = max(current.percentage, target.percentage)
    if index == len(config.stages) - 1:
        return CurrentStage(stage=index, percentage=percentage)

    following = config.stages[index + 1]
    if following.stage_date is not None:
        next_progress_at = following.stage_date
    elif target.duration is not None:
        next_progress_at = now + target.duration.to_timedelta()
    else:
        next_progress_at = None
    return CurrentStage(stage=index, percentage=percentage, next_progress_at=next_progress_at)


def _rollout_type(config: Optional[RolloutConfig]) -> str:
    return config.type if config is not None else "unknown"


@dataclass
class TickReport:
    """What one scheduler tick did, by flag id."""

    now: datetime
    scanned: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    advanced: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    not_due: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "scanned": len(self.scanned),
            "started": len(self.started),
            "advanced": len(self.advanced),
            "conflicts": len(self.conflicts),
            "not_due": len(self.not_due),
            "failed": len(self.failed),
        }


class ProgressiveStageScheduler:
    """Advances due progressive rollouts one stage per tick."""

    def __init__(self, config_store: "ConfigStore", clock: Optional[Callable[[], datetime]] = None):
        self.config_store = config_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one scheduling pass.

        Args:
            now: Evaluation time (defaults to the scheduler clock)

        Returns:
            TickReport listing each scanned flag under its outcome

        Raises:
            StoreUnavailableError: If the due configs cannot be listed
        """
        now = ensure_utc(now or self._clock())
        report = TickReport(now=now)

        try:
            flag_ids = await self.config_store.list_due_progressive_configs(now)
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError("Failed to list due rollout configs", original_error=e) from e

        for flag_id in dict.fromkeys(flag_ids):
            report.scanned.append(flag_id)
            try:
                outcome, rollout_type = await self._advance(flag_id, now)
            except Exception as e:
                logger.error("rollout_advance_failed", flag_id=flag_id, error=str(e), exc_info=True)
                outcome, rollout_type = "failed", "unknown"

            getattr(report, "conflicts" if outcome == "conflict" else outcome).append(flag_id)
            rollout_stage_advances_total.labels(rollout_type=rollout_type, outcome=outcome).inc()

        logger.info("rollout_tick_completed", **report.to_dict())
        return report

    async def _advance(self, flag_id: str, now: datetime) -> Tuple[str, str]:
        config = await self.config_store.get_rollout_config(flag_id)
        if config is None or not is_due(config, now):
            logger.debug("rollout_not_due", flag_id=flag_id)
            return "not_due", _rollout_type(config)

        expected = config.current_stage.stage
        started = stage_start(config, now)
        if started is not None:
            if not await self.config_store.cas_advance_stage(flag_id, expected, started):
                logger.info("rollout_advance_conflict", flag_id=flag_id, expected_stage=expected)
                return "conflict", config.type
            logger.info(
                "rollout_stage_started",
                flag_id=flag_id,
                stage=expected,
                next_progress_at=started.next_progress_at.isoformat(),
            )
            return "started", config.type

        new_stage = next_stage(config, now)
        applied = await self.config_store.cas_advance_stage(flag_id, expected, new_stage)
        if not applied:
            logger.info("rollout_advance_conflict", flag_id=flag_id, expected_stage=expected)
            return "conflict", config.type

        rollout_current_percentage.labels(flag_id=flag_id).set(new_stage.percentage)
        logger.info(
            "rollout_stage_advanced",
            flag_id=flag_id,
            rollout_type=config.type,
            from_stage=expected,
            to_stage=new_stage.stage,
            percentage=new_stage.percentage,
            next_progress_at=new_stage.next_progress_at.isoformat() if new_stage.next_progress_at else None,
        )
        return "advanced", config.type
