"""Flag and rollout configuration models.

A ``flags`` row is one flag in one environment. Its active rollout config
lives in ``flag_rollouts`` as the persisted camelCase JSON document, with
the stage cursor mirrored into indexed columns so the scheduler can find
due rollouts and compare-and-set the cursor in SQL.
"""

from __future__ import annotations

from datetime import datetime

from bitswitch.core.database import Base
from bitswitch.services.evaluation_service import FlagDefinition
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint


class Flag(Base):
    """Feature flag in one environment.

    Attributes:
        id: Flag id
        org_slug: Owning organization
        key: Flag key, unique per organization and environment
        environment: DEV, STAGING, PROD or TEST
        flag_type: BOOLEAN, STRING, NUMBER, JSON, AB_TEST or MULTIVARIATE
        is_active: Global on/off switch
        is_environment_active: Per-environment on/off switch
        value: Value served to included requests
        default_value: Value served to everyone else
        variations: Array of {id, name, value, weight}
        rules: Array of targeting rules, in evaluation order
        kill_switch_active: Whether an active kill switch covers this flag
    """

    __tablename__ = "flags"

    __table_args__ = (
        UniqueConstraint("org_slug", "key", "environment", name="uq_flags_org_key_env"),
        Index("ix_flags_key_env", "key", "environment"),
    )

    id = Column(String(64), primary_key=True)
    org_slug = Column(String(100), nullable=True, index=True)
    key = Column(String(255), nullable=False)
    environment = Column(String(20), nullable=False, default="PROD")
    flag_type = Column(String(50), nullable=False, default="BOOLEAN")
    is_active = Column(Boolean, nullable=False, default=True)
    is_environment_active = Column(Boolean, nullable=False, default=True)
    value = Column(JSON, nullable=True)
    default_value = Column(JSON, nullable=True)
    variations = Column(JSON, nullable=True)
    rules = Column(JSON, nullable=True)
    kill_switch_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Flag(key='{self.key}', environment={self.environment}, active={self.is_active})>"

    def to_definition(self) -> FlagDefinition:
        return FlagDefinition.from_dict(
            {
                "id": self.id,
                "key": self.key,
                "org_slug": self.org_slug,
                "environment": self.environment,
                "flag_type": self.flag_type,
                "is_active": self.is_active,
                "is_environment_active": self.is_environment_active,
                "value": self.value,
                "default_value": self.default_value,
                "variations": self.variations,
                "rules": self.rules,
                "kill_switch_active": self.kill_switch_active,
            }
        )


class FlagRollout(Base):
    """Active rollout configuration of a flag.

    ``current_stage``, ``next_progress_at`` and ``is_terminal`` are derived
    from ``config`` on every write. Timestamps are naive UTC.
    """

    __tablename__ = "flag_rollouts"

    __table_args__ = (Index("ix_flag_rollouts_due", "is_terminal", "next_progress_at"),)

    flag_id = Column(String(64), ForeignKey("flags.id", ondelete="CASCADE"), primary_key=True)
    rollout_type = Column(String(50), nullable=False, index=True)
    config = Column(JSON, nullable=False)
    current_stage = Column(Integer, nullable=True)
    next_progress_at = Column(DateTime, nullable=True)
    is_terminal = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FlagRollout(flag_id='{self.flag_id}', type={self.rollout_type}, stage={self.current_stage})>"
