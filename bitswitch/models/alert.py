"""Alert definition model."""

from __future__ import annotations

from datetime import datetime

from bitswitch.core.database import Base
from bitswitch.schemas.alert import AlertDefinition
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String


class Alert(Base):
    """Threshold alert on a metric."""

    __tablename__ = "alert_definitions"

    id = Column(String(64), primary_key=True)
    metric_id = Column(String(64), ForeignKey("metrics.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    operator = Column(String(20), nullable=False)  # EQUALS_TO, GREATER_THAN, LESS_THAN
    threshold = Column(Float, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Alert(id='{self.id}', metric_id='{self.metric_id}', operator={self.operator})>"

    def to_schema(self) -> AlertDefinition:
        return AlertDefinition(
            id=self.id,
            metric_id=self.metric_id,
            operator=self.operator,
            threshold=self.threshold,
            is_enabled=self.is_enabled,
            name=self.name,
        )
