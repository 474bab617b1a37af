"""
Content Policy Engine

Pre-network instruction checks for the generative edit stage.
"""

from garment_studio.engines.policy.schemas import PolicyDecision, PolicyStatus
from garment_studio.engines.policy.services import ContentPolicyService, RESTRICTED_TERMS

__all__ = ["ContentPolicyService", "PolicyDecision", "PolicyStatus", "RESTRICTED_TERMS"]
