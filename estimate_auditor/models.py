"""
Pydantic models for the audit pipeline — strict typing as our first line of defense.

The central type is EvidencedField: a value the model read off an image, together
with the literal text it was read from. A value with no evidence does not exist;
the model enforces that at construction so no downstream stage has to remember.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# ─── Enumerations ───────────────────────────────────────────────────


class ExtractionSource(str, Enum):
    """Which document a fact was read from."""

    FLYER = "flyer"  # Listing sheet, the contractual source of truth
    ESTIMATE = "estimate"  # Itemized quote being audited


class ConflictType(str, Enum):
    VALUE_MISMATCH = "value_mismatch"
    FLYER_NULL_ESTIMATE_EXISTS = "flyer_null_estimate_exists"
    LOW_CONFIDENCE = "low_confidence"


class VerificationStatus(str, Enum):
    CONFIRMED = "confirmed"  # Re-read from the flyer with evidence
    UNCONFIRMED = "unconfirmed"  # Estimate value adopted, user must check
    REQUIRES_MANUAL_CHECK = "requires_manual_check"  # No evidence anywhere


class DiagnosisStatus(str, Enum):
    FAIR = "fair"
    NEGOTIABLE = "negotiable"
    CUT = "cut"
    REQUIRES_CONFIRMATION = "requires_confirmation"


class ExtractionQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─── Input Images ───────────────────────────────────────────────────

SUPPORTED_MIME_TYPES: frozenset[str] = frozenset({
    "image/jpeg", "image/png", "image/webp", "image/gif",
})


def normalize_mime_type(mime_type: str | None) -> str:
    """Map a declared MIME type onto one the vision model accepts.

    Unknown types fall back to JPEG: phone cameras routinely send
    `application/octet-stream` for perfectly good photos.
    """
    if not mime_type:
        return "image/jpeg"
    normalized = mime_type.strip().lower()
    if normalized in SUPPORTED_MIME_TYPES:
        return normalized
    if normalized == "image/jpg":
        return "image/jpeg"
    logger.warning("Unsupported MIME type %r — falling back to image/jpeg", mime_type)
    return "image/jpeg"


class ImageInput(BaseModel):
    """One photographed page, in upload order."""

    data: bytes = Field(min_length=1)
    mime_type: str = "image/jpeg"

    @field_validator("mime_type", mode="before")
    @classmethod
    def _normalize_mime(cls, value: Any) -> str:
        return normalize_mime_type(value)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


# ─── Evidenced Field ────────────────────────────────────────────────

FieldValue = Optional[Union[bool, int, float, str]]


class EvidencedField(BaseModel):
    """A single extracted value and the literal excerpt it came from.

    Invariant: value is not None ⇒ evidence_text is not None.
    Values reported without evidence are nulled here, not trusted.
    """

    value: FieldValue = None
    evidence_text: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: ExtractionSource
    image_index: int = 0
    note: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _enforce_evidence(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        evidence = data.get("evidence_text")
        if isinstance(evidence, str) and not evidence.strip():
            evidence = None
        data["evidence_text"] = evidence

        if data.get("value") is not None and evidence is None:
            data["value"] = None
            data["note"] = data.get("note") or "value discarded: no evidence_text"

        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        data["confidence"] = min(1.0, max(0.0, confidence))
        return data

    @classmethod
    def empty(cls, source: ExtractionSource, note: str | None = None) -> EvidencedField:
        return cls(source=source, note=note)

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def numeric(self) -> float | None:
        """The value as a number, or None if absent or non-numeric."""
        if isinstance(self.value, bool) or self.value is None:
            return None
        if isinstance(self.value, (int, float)):
            return self.value
        return None


class OtherItem(BaseModel):
    """A free-form line item ("消毒料", "安心サポート" ...)."""

    name: str
    value: EvidencedField


# ─── Fact Set ───────────────────────────────────────────────────────

# Every EvidencedField attribute of ExtractedFacts, in document order.
EVIDENCED_FIELD_NAMES: tuple[str, ...] = (
    "property_name",
    "room_number",
    "rent",
    "management_fee",
    "deposit_months",
    "key_money_months",
    "brokerage_fee",
    "brokerage_fee_months",
    "brokerage_fee_tax_included",
    "administrative_fee",
    "guarantee_fee",
    "fire_insurance",
    "support_service",
    "key_exchange",
    "cleaning_fee",
    "renewal_fee",
    "free_rent_months",
    "contract_start_date",
    "move_in_date",
)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExtractedFacts(BaseModel):
    """Everything one document says, field by field, with evidence.

    One instance per source per request. Never persisted.
    """

    source: ExtractionSource

    property_name: EvidencedField
    room_number: EvidencedField

    rent: EvidencedField  # yen
    management_fee: EvidencedField  # yen
    deposit_months: EvidencedField  # months
    key_money_months: EvidencedField  # months

    brokerage_fee: EvidencedField  # yen
    brokerage_fee_months: EvidencedField  # months
    brokerage_fee_tax_included: EvidencedField  # bool

    administrative_fee: EvidencedField
    guarantee_fee: EvidencedField
    fire_insurance: EvidencedField
    support_service: EvidencedField
    key_exchange: EvidencedField
    cleaning_fee: EvidencedField
    renewal_fee: EvidencedField

    free_rent_months: EvidencedField

    contract_start_date: EvidencedField
    move_in_date: EvidencedField

    other_items: list[OtherItem] = Field(default_factory=list)

    extraction_timestamp: str = Field(default_factory=_utcnow_iso)
    total_items_found: int = 0

    @classmethod
    def empty(cls, source: ExtractionSource) -> ExtractedFacts:
        """The all-null fact set used whenever extraction fails."""
        fields = {name: EvidencedField.empty(source) for name in EVIDENCED_FIELD_NAMES}
        return cls(source=source, **fields)

    def get_field(self, name: str) -> EvidencedField:
        if name not in EVIDENCED_FIELD_NAMES:
            raise KeyError(f"Unknown evidenced field: {name}")
        field: EvidencedField = getattr(self, name)
        return field

    def iter_fields(self):
        for name in EVIDENCED_FIELD_NAMES:
            yield name, getattr(self, name)


# ─── Conflicts & Verification ───────────────────────────────────────


class Conflict(BaseModel):
    """A disagreement between flyer and estimate for one field."""

    field_name: str
    flyer_field: EvidencedField
    estimate_field: EvidencedField
    conflict_type: ConflictType
    needs_verification: bool = True


class VerificationResult(BaseModel):
    field_name: str
    verified_field: EvidencedField
    status: VerificationStatus
    note: str = ""


# ─── Diagnosis ──────────────────────────────────────────────────────


class ItemEvidence(BaseModel):
    flyer_evidence: Optional[str] = None
    estimate_evidence: Optional[str] = None
    source_description: str = ""


class DiagnosisItem(BaseModel):
    """One billed line with its verdict. Prices are whole yen."""

    name: str
    price_original: Optional[int] = None
    price_fair: Optional[int] = None
    status: DiagnosisStatus
    reason: str
    evidence: ItemEvidence
    requires_confirmation: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ExtractionLog(BaseModel):
    """Machine-readable trace of how one result was reached."""

    flyer_extracted: bool = False
    estimate_extracted: bool = False
    conflicts_detected: list[str] = Field(default_factory=list)
    verification_performed: list[str] = Field(default_factory=list)
    final_null_fields: list[str] = Field(default_factory=list)


class DiagnosisResult(BaseModel):
    """The final output of the audit pipeline."""

    property_name: str
    room_number: str
    items: list[DiagnosisItem] = Field(default_factory=list)
    total_original: int = 0
    total_fair: int = 0
    discount_amount: int = 0
    risk_score: int = Field(default=0, ge=0, le=100)
    pro_review: str = ""
    has_unconfirmed_items: bool = False
    unconfirmed_item_names: list[str] = Field(default_factory=list)
    extraction_quality: ExtractionQuality = ExtractionQuality.LOW
    extraction_log: Optional[ExtractionLog] = None


# Japanese labels, used in prompts and in user-facing text.
FIELD_LABELS: dict[str, str] = {
    "property_name": "物件名",
    "room_number": "号室",
    "rent": "賃料",
    "management_fee": "管理費",
    "deposit_months": "敷金",
    "key_money_months": "礼金",
    "brokerage_fee": "仲介手数料",
    "brokerage_fee_months": "仲介手数料",
    "brokerage_fee_tax_included": "仲介手数料（税込表記）",
    "administrative_fee": "事務手数料",
    "guarantee_fee": "保証会社料",
    "fire_insurance": "火災保険",
    "support_service": "24時間サポート",
    "key_exchange": "鍵交換",
    "cleaning_fee": "クリーニング",
    "renewal_fee": "更新料",
    "free_rent_months": "フリーレント",
    "contract_start_date": "契約開始日",
    "move_in_date": "入居可能日",
}
