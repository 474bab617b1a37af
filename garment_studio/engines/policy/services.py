"""
Content Policy Service

Synchronous, network-free check of edit instructions against terms that
refer to minors. Edits depicting children are not supported.
"""

import re
import unicodedata
from typing import Dict, List, Optional, Sequence

from garment_studio.core.logging import get_logger
from garment_studio.engines.policy.schemas import PolicyDecision, PolicyStatus

logger = get_logger(__name__)


# Whole-word matches after normalization; plural and possessive forms included.
RESTRICTED_TERMS = (
    "child",
    "children",
    "childs",
    "kid",
    "kids",
    "kiddo",
    "toddler",
    "toddlers",
    "infant",
    "infants",
    "babies",
    "preteen",
    "preteens",
    "underage",
    "schoolgirl",
    "schoolboy",
)

# Blocked only where the word names a person ("on a baby"), not as a
# modifier ("baby blue", "a baby doll dress").
CONTEXTUAL_TERMS = {
    "baby": (
        r"\b(?:a|an|the|my|your|this|that|on|for|with)\s+baby\b"
        r"(?!\s+(?:blue|pink|yellow|green|doll|dolls|tee|tees|rib|alpaca|cashmere)\b)"
    ),
}


class ContentPolicyService:
    """Restricted-term check for edit instructions.

    Pure function of the instruction text: the same text always yields the
    same decision, regardless of call count or prior state.
    """

    def __init__(
        self,
        restricted_terms: Optional[Sequence[str]] = None,
        contextual_terms: Optional[Dict[str, str]] = None,
    ):
        if restricted_terms is None:
            terms = RESTRICTED_TERMS
            contextual_terms = CONTEXTUAL_TERMS if contextual_terms is None else contextual_terms
        else:
            terms = tuple(restricted_terms)
        self.restricted_terms = terms
        self._contextual = {
            term: re.compile(pattern) for term, pattern in (contextual_terms or {}).items()
        }
        self._pattern = re.compile(
            r"\b(" + "|".join(re.escape(term) for term in sorted(terms, key=len, reverse=True)) + r")\b"
        )

    def _normalize_text(self, text: str) -> str:
        """Normalize text to catch obfuscated terms.

        Handles:
        - Unicode normalization (full-width letters, ligatures)
        - Invisible characters
        - Case normalization
        """
        normalized = unicodedata.normalize("NFKC", text)

        invisible_chars = [
            '\u200b', '\u200c', '\u200d', '\u2060', '\ufeff',  # Zero-width chars
            '\u00ad',  # Soft hyphen
        ]
        for char in invisible_chars:
            normalized = normalized.replace(char, "")

        normalized = normalized.lower()
        normalized = re.sub(r"[^\w\s]", " ", normalized)
        normalized = re.sub(r"\s+", " ", normalized).strip()
        return normalized

    def find_restricted_terms(self, instruction: str) -> List[str]:
        """Distinct restricted terms present in the instruction."""
        text = self._normalize_text(instruction or "")
        found: List[str] = []
        for match in self._pattern.finditer(text):
            term = match.group(1)
            if term not in found:
                found.append(term)
        for term, pattern in self._contextual.items():
            if term not in found and pattern.search(text):
                found.append(term)
        return found

    def check(self, instruction: str) -> PolicyDecision:
        terms = self.find_restricted_terms(instruction)
        if terms:
            logger.warning("policy_rejected", terms=terms)
            return PolicyDecision(
                status=PolicyStatus.BLOCK,
                terms=terms,
                reason="Edits involving images of children are not supported.",
            )
        return PolicyDecision(status=PolicyStatus.PASS)
