"""
Flag evaluation request and response schemas
"""

from enum import Enum
from typing import Any, Dict, Optional

from bitswitch.schemas.rollout import CamelModel
from pydantic import Field


class Environment(str, Enum):
    """Deployment environment a flag is evaluated in"""

    DEV = "DEV"
    STAGING = "STAGING"
    PROD = "PROD"
    TEST = "TEST"


class EvaluationReason(str, Enum):
    """Why an evaluation produced its result"""

    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    NO_ROLLOUT_CONFIG = "NO_ROLLOUT_CONFIG"
    KILL_SWITCH_ACTIVE = "KILL_SWITCH_ACTIVE"
    FLAG_DISABLED = "FLAG_DISABLED"
    ENVIRONMENT_DISABLED = "ENVIRONMENT_DISABLED"
    RULE_EXCLUDED = "RULE_EXCLUDED"
    RULE_MATCHED = "RULE_MATCHED"
    RULE_ROLLOUT_EXCLUDED = "RULE_ROLLOUT_EXCLUDED"
    ROLLOUT_INCLUDED = "ROLLOUT_INCLUDED"
    ROLLOUT_EXCLUDED = "ROLLOUT_EXCLUDED"
    ROLLOUT_NOT_ACTIVE = "ROLLOUT_NOT_ACTIVE"
    EVALUATION_ERROR = "EVALUATION_ERROR"


class EvaluationRequest(CamelModel):
    """SDK evaluation request"""

    flag_key: str = Field(..., min_length=1)
    environment: Environment
    user_context: Dict[str, Any] = Field(default_factory=dict)
    org_slug: Optional[str] = None


class EvaluationResult(CamelModel):
    """Outcome of evaluating one flag for one context"""

    flag_key: str
    environment: str
    value: Any = None
    default_value: Any = None
    enabled: bool = False
    rule_matched: Optional[str] = None
    reason: EvaluationReason
    variation_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        # value/defaultValue are kept even when null
        data = self.model_dump(mode="json", by_alias=True)
        for key in ("ruleMatched", "variationId"):
            if data.get(key) is None:
                data.pop(key, None)
        return data
