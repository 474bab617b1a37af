from pydantic import BaseModel, Field
from typing import List, Optional
from enum import Enum


class PolicyStatus(str, Enum):
    PASS = "PASS"
    BLOCK = "BLOCK"


class PolicyDecision(BaseModel):
    """Outcome of a content policy check."""
    status: PolicyStatus
    terms: List[str] = Field(default_factory=list, description="Restricted terms found")
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == PolicyStatus.PASS
