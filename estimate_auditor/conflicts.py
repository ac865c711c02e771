"""
Cross-source conflict detection — flyer vs. estimate, field by field.

A conflict is not an error: it is the signal that a field deserves a second,
narrower look at the flyer. No conflicts means the verification stage is skipped.
"""

from __future__ import annotations

import logging

from .models import Conflict, ConflictType, EvidencedField, ExtractedFacts

logger = logging.getLogger(__name__)


# ─── Constants ───────────────────────────────────────────────────────

LOW_CONFIDENCE_THRESHOLD = 0.5

# Fields that both documents state and that can be compared directly.
CROSS_CHECK_FIELDS: tuple[str, ...] = (
    "key_money_months",
    "deposit_months",
    "rent",
    "management_fee",
    "brokerage_fee_months",
    "free_rent_months",
)

# A weak flyer reading on these is worth re-reading even without a disagreement.
CRITICAL_FIELDS: frozenset[str] = frozenset({
    "key_money_months",
    "deposit_months",
    "rent",
    "management_fee",
    "brokerage_fee",
})


def _values_differ(flyer: EvidencedField, estimate: EvidencedField) -> bool:
    a, b = flyer.numeric(), estimate.numeric()
    if a is not None and b is not None:
        return float(a) != float(b)
    return flyer.value != estimate.value


def _classify(
    field_name: str, flyer: EvidencedField, estimate: EvidencedField
) -> ConflictType | None:
    """First matching rule wins."""
    flyer_weak = flyer.confidence < LOW_CONFIDENCE_THRESHOLD

    if (flyer.value is None or flyer_weak) and estimate.value is not None:
        return ConflictType.FLYER_NULL_ESTIMATE_EXISTS

    if flyer.value is not None and estimate.value is not None and _values_differ(flyer, estimate):
        return ConflictType.VALUE_MISMATCH

    if field_name in CRITICAL_FIELDS and (flyer_weak or not flyer.evidence_text):
        return ConflictType.LOW_CONFIDENCE

    return None


def detect_conflicts(flyer: ExtractedFacts, estimate: ExtractedFacts) -> list[Conflict]:
    """Compare normalized flyer and estimate facts. Pure; at most one conflict per field."""
    conflicts: list[Conflict] = []

    for field_name in CROSS_CHECK_FIELDS:
        flyer_field = flyer.get_field(field_name)
        estimate_field = estimate.get_field(field_name)

        conflict_type = _classify(field_name, flyer_field, estimate_field)
        if conflict_type is None:
            continue

        conflicts.append(
            Conflict(
                field_name=field_name,
                flyer_field=flyer_field,
                estimate_field=estimate_field,
                conflict_type=conflict_type,
                needs_verification=True,
            )
        )
        logger.debug(
            "conflict on %s (%s): flyer=%r [%r] estimate=%r [%r]",
            field_name, conflict_type.value,
            flyer_field.value, flyer_field.evidence_text,
            estimate_field.value, estimate_field.evidence_text,
        )

    return conflicts
