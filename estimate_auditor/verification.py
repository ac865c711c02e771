"""
Targeted re-verification of conflicting fields, and merging the outcome.

Policy (never fabricate):
  1. The flyer re-read yields a value with evidence   → confirmed, adopt it
  2. Otherwise the estimate has a value with evidence → unconfirmed, adopt it, flag it
  3. Otherwise                                        → requires_manual_check, null

Only the flyer is re-read: it is what the tenant was promised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .extractor_llm import FactExtractor
from .models import (
    Conflict,
    EvidencedField,
    ExtractedFacts,
    ExtractionSource,
    ImageInput,
    VerificationResult,
    VerificationStatus,
)
from .normalizer import normalize_field

logger = logging.getLogger(__name__)


def _usable(field: EvidencedField) -> bool:
    return field.value is not None and bool(field.evidence_text)


def resolve_conflict(conflict: Conflict, reread: EvidencedField) -> VerificationResult:
    """Decide the final value of one conflicting field. Pure."""
    reread = normalize_field(reread)

    if _usable(reread) and reread.source == ExtractionSource.FLYER:
        note = f"再検証で確認: evidence=\"{reread.evidence_text}\""
        return VerificationResult(
            field_name=conflict.field_name,
            verified_field=reread,
            status=VerificationStatus.CONFIRMED,
            note=note,
        )

    estimate = conflict.estimate_field
    if _usable(estimate):
        note = f"図面で確認不可。見積書の値を採用: evidence=\"{estimate.evidence_text}\""
        return VerificationResult(
            field_name=conflict.field_name,
            verified_field=estimate,
            status=VerificationStatus.UNCONFIRMED,
            note=note,
        )

    note = "再検証でも根拠が取得できませんでした。手動確認が必要です。"
    return VerificationResult(
        field_name=conflict.field_name,
        verified_field=EvidencedField.empty(ExtractionSource.FLYER, note=note),
        status=VerificationStatus.REQUIRES_MANUAL_CHECK,
        note=note,
    )


async def _reread(
    extractor: FactExtractor,
    conflict: Conflict,
    flyer_images: Sequence[ImageInput],
) -> EvidencedField:
    if not flyer_images:
        # Nothing to re-read; the estimate side can at best be adopted unconfirmed.
        return conflict.estimate_field
    try:
        return await extractor.verify_field(flyer_images, conflict.field_name)
    except Exception as e:
        logger.error("Re-verification of %s raised: %s", conflict.field_name, e)
        return EvidencedField.empty(ExtractionSource.FLYER, note=f"verification error: {e}")


async def verify_conflicts(
    extractor: FactExtractor,
    conflicts: Sequence[Conflict],
    flyer_images: Sequence[ImageInput],
) -> dict[str, VerificationResult]:
    """Re-verify every flagged conflict concurrently, one call per field.

    A failure on one field never affects the others.
    """
    pending = [c for c in conflicts if c.needs_verification]
    if not pending:
        return {}

    logger.info("Re-verifying %d conflicting field(s) against the flyer", len(pending))
    rereads = await asyncio.gather(
        *(_reread(extractor, conflict, flyer_images) for conflict in pending)
    )

    results: dict[str, VerificationResult] = {}
    for conflict, reread in zip(pending, rereads):
        result = resolve_conflict(conflict, reread)
        results[conflict.field_name] = result
        logger.info(
            "Verification of %s: %s (value=%r)",
            conflict.field_name, result.status.value, result.verified_field.value,
        )
    return results


def merge_facts(
    flyer: ExtractedFacts,
    estimate: ExtractedFacts,
    results: dict[str, VerificationResult],
) -> tuple[ExtractedFacts, ExtractedFacts]:
    """Apply confirmed/unconfirmed outcomes onto the flyer. The estimate is returned as-is."""
    updates: dict[str, EvidencedField] = {}
    for field_name, result in results.items():
        if result.status == VerificationStatus.REQUIRES_MANUAL_CHECK:
            continue
        flyer.get_field(field_name)  # unknown names are a caller bug
        updates[field_name] = result.verified_field.model_copy(update={"note": result.note})

    merged_flyer = flyer.model_copy(update=updates) if updates else flyer
    return merged_flyer, estimate


def unconfirmed_fields(results: dict[str, VerificationResult]) -> list[str]:
    """Fields the user must check by hand, in verification order."""
    return [
        field_name
        for field_name, result in results.items()
        if result.status
        in (VerificationStatus.UNCONFIRMED, VerificationStatus.REQUIRES_MANUAL_CHECK)
    ]
