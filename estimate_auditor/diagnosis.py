"""
Deterministic diagnosis engine — the decision table.

Takes merged flyer facts, estimate facts and the list of fields nobody could
confirm, and prices every billed item. It NEVER calls a model and NEVER looks
at an image: identical inputs always give identical output.

Each category function:
  - Reads only the fact sets
  - Returns a DiagnosisItem, or None when the estimate does not bill it
  - Is independently testable

diagnose() runs every category, then aggregates totals, risk score,
extraction quality and the narrative review.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from .models import (
    FIELD_LABELS,
    DiagnosisItem,
    DiagnosisResult,
    DiagnosisStatus,
    EvidencedField,
    ExtractedFacts,
    ExtractionLog,
    ExtractionQuality,
    ItemEvidence,
    OtherItem,
)
from .normalizer import null_fields

logger = logging.getLogger(__name__)


# ─── Constants ───────────────────────────────────────────────────────

BROKERAGE_FEE_FAIR_MONTHS = Decimal("0.5")
CONSUMPTION_TAX_RATE = Decimal("1.1")
FIRE_INSURANCE_FAIR_AMOUNT = 16_000
LARGE_DISCOUNT_THRESHOLD = 50_000

# Risk-score weights. Heuristic and tunable; not derived from any standard.
RISK_WEIGHT_CUT = 10
RISK_WEIGHT_NEGOTIABLE = 5

QUALITY_CRITICAL_FIELDS: tuple[str, ...] = ("key_money_months", "deposit_months", "rent")

NOT_STATED = "記載なし"
UNCERTAIN_READING = "読み取りに不確実性があります。確認を推奨します。"


# ─── Helpers ─────────────────────────────────────────────────────────


def _dec(value: int | float) -> Decimal:
    return Decimal(str(value))


def _yen(amount: Decimal | int | float) -> int:
    """Round to whole yen, half up."""
    if not isinstance(amount, Decimal):
        amount = _dec(amount)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _months_text(months: Decimal | int | float) -> str:
    value = _dec(months) if not isinstance(months, Decimal) else months
    return f"{value.normalize():f}"


def _evidence(
    flyer: Optional[str], estimate: Optional[str], *, show_flyer: bool = True
) -> ItemEvidence:
    description = f"見積書: {estimate or NOT_STATED}"
    if show_flyer:
        description = f"図面: {flyer or NOT_STATED} / {description}"
    return ItemEvidence(
        flyer_evidence=flyer,
        estimate_evidence=estimate,
        source_description=description,
    )


def _status_or_confirm(unconfirmed: bool) -> DiagnosisStatus:
    return DiagnosisStatus.REQUIRES_CONFIRMATION if unconfirmed else DiagnosisStatus.FAIR


def calculation_rent(flyer: ExtractedFacts, estimate: ExtractedFacts) -> Decimal:
    """Rent used for month-based amounts: estimate first, then flyer, else 0."""
    rent = estimate.rent.numeric()
    if rent is None:
        rent = flyer.rent.numeric()
    return _dec(rent) if rent is not None else Decimal(0)


# ─── Category Rules ──────────────────────────────────────────────────


def diagnose_deposit(
    flyer: ExtractedFacts, estimate: ExtractedFacts, rent: Decimal, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """Deposit is refundable; it is fair unless we could not confirm it."""
    flyer_months = flyer.deposit_months.numeric()
    estimate_months = estimate.deposit_months.numeric()
    if flyer_months is None and estimate_months is None:
        return None

    months = estimate_months if estimate_months is not None else flyer_months
    assert months is not None
    amount = _yen(_dec(months) * rent)
    is_unconfirmed = "deposit_months" in unconfirmed

    return DiagnosisItem(
        name="敷金",
        price_original=amount,
        price_fair=amount,
        status=_status_or_confirm(is_unconfirmed),
        reason=UNCERTAIN_READING if is_unconfirmed else f"{_months_text(months)}ヶ月分として適正です。",
        evidence=_evidence(flyer.deposit_months.evidence_text, estimate.deposit_months.evidence_text),
        requires_confirmation=is_unconfirmed,
        confidence=max(flyer.deposit_months.confidence, estimate.deposit_months.confidence),
    )


def diagnose_key_money(
    flyer: ExtractedFacts, estimate: ExtractedFacts, rent: Decimal, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """Key money billed although the flyer says zero is a straight cut."""
    flyer_months = flyer.key_money_months.numeric()
    estimate_months = estimate.key_money_months.numeric()
    if flyer_months is None and estimate_months is None:
        return None

    months = estimate_months if estimate_months is not None else flyer_months
    assert months is not None
    amount = _yen(_dec(months) * rent)
    is_unconfirmed = "key_money_months" in unconfirmed

    if flyer_months == 0 and estimate_months is not None and estimate_months > 0:
        status = DiagnosisStatus.CUT
        reason = (
            f"図面では礼金0（{flyer.key_money_months.evidence_text}）ですが、"
            f"見積書では{_months_text(estimate_months)}ヶ月請求されています。"
            f"削除できる可能性が高いです。"
        )
    elif is_unconfirmed:
        status = DiagnosisStatus.REQUIRES_CONFIRMATION
        reason = UNCERTAIN_READING
    else:
        status = DiagnosisStatus.FAIR
        reason = f"{_months_text(months)}ヶ月分です。"

    return DiagnosisItem(
        name="礼金",
        price_original=amount,
        price_fair=0 if status == DiagnosisStatus.CUT else amount,
        status=status,
        reason=reason,
        evidence=_evidence(flyer.key_money_months.evidence_text, estimate.key_money_months.evidence_text),
        requires_confirmation=is_unconfirmed,
        confidence=max(flyer.key_money_months.confidence, estimate.key_money_months.confidence),
    )


def diagnose_brokerage_fee(
    flyer: ExtractedFacts, estimate: ExtractedFacts, rent: Decimal, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """The standard brokerage fee is half a month's rent plus tax."""
    billed = estimate.brokerage_fee.numeric()
    billed_months = estimate.brokerage_fee_months.numeric()
    if billed is None and billed_months is None:
        return None

    amount = _dec(billed or 0)
    months = _dec(billed_months or 0)
    if amount == 0 and months > 0:
        amount = months * rent * CONSUMPTION_TAX_RATE
    if months == 0 and amount > 0 and rent > 0:
        months = amount / (rent * CONSUMPTION_TAX_RATE)

    is_unconfirmed = "brokerage_fee" in unconfirmed or "brokerage_fee_months" in unconfirmed
    fair = amount

    if months > BROKERAGE_FEE_FAIR_MONTHS:
        status = DiagnosisStatus.NEGOTIABLE
        fair = rent * BROKERAGE_FEE_FAIR_MONTHS * CONSUMPTION_TAX_RATE
        reason = (
            f"原則は0.5ヶ月分ですが、{months:.1f}ヶ月分請求されています。"
            f"減額できる可能性が高いです。"
        )
    elif is_unconfirmed:
        status = DiagnosisStatus.REQUIRES_CONFIRMATION
        reason = UNCERTAIN_READING
    else:
        status = DiagnosisStatus.FAIR
        reason = f"{months:.1f}ヶ月分で適正です。"

    estimate_text = estimate.brokerage_fee.evidence_text or estimate.brokerage_fee_months.evidence_text
    return DiagnosisItem(
        name="仲介手数料",
        price_original=_yen(amount),
        price_fair=_yen(fair),
        status=status,
        reason=reason,
        evidence=_evidence(
            flyer.brokerage_fee.evidence_text or flyer.brokerage_fee_months.evidence_text,
            estimate_text,
            show_flyer=False,
        ),
        requires_confirmation=is_unconfirmed,
        confidence=max(estimate.brokerage_fee.confidence, estimate.brokerage_fee_months.confidence),
    )


def diagnose_guarantee_fee(
    flyer: ExtractedFacts, estimate: ExtractedFacts, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    amount = estimate.guarantee_fee.numeric()
    if amount is None:
        return None
    is_unconfirmed = "guarantee_fee" in unconfirmed

    return DiagnosisItem(
        name="保証会社料",
        price_original=_yen(amount),
        price_fair=_yen(amount),
        status=_status_or_confirm(is_unconfirmed),
        reason=UNCERTAIN_READING if is_unconfirmed else "保証会社利用は一般的です。",
        evidence=_evidence(
            flyer.guarantee_fee.evidence_text, estimate.guarantee_fee.evidence_text, show_flyer=False
        ),
        requires_confirmation=is_unconfirmed,
        confidence=estimate.guarantee_fee.confidence,
    )


def diagnose_fire_insurance(
    flyer: ExtractedFacts, estimate: ExtractedFacts, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """Tenants may insure themselves; anything above the market cap is negotiable."""
    amount = estimate.fire_insurance.numeric()
    if amount is None:
        return None
    is_unconfirmed = "fire_insurance" in unconfirmed
    billed = _yen(amount)

    if billed > FIRE_INSURANCE_FAIR_AMOUNT:
        status = DiagnosisStatus.NEGOTIABLE
        fair = FIRE_INSURANCE_FAIR_AMOUNT
        reason = (
            f"自己加入すれば約{FIRE_INSURANCE_FAIR_AMOUNT:,}円以下に変更できる可能性があります"
            f"（ただし火災保険は必ず加入が必要）。"
        )
    else:
        status = _status_or_confirm(is_unconfirmed)
        fair = billed
        reason = UNCERTAIN_READING if is_unconfirmed else "適正な金額です。"

    return DiagnosisItem(
        name="火災保険",
        price_original=billed,
        price_fair=fair,
        status=status,
        reason=reason,
        evidence=_evidence(
            flyer.fire_insurance.evidence_text, estimate.fire_insurance.evidence_text, show_flyer=False
        ),
        requires_confirmation=is_unconfirmed,
        confidence=estimate.fire_insurance.confidence,
    )


def diagnose_support_service(
    flyer: ExtractedFacts, estimate: ExtractedFacts, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """Support plans the flyer never mentions are add-ons the tenant can refuse."""
    amount = estimate.support_service.numeric()
    if amount is None:
        return None
    is_unconfirmed = "support_service" in unconfirmed

    if flyer.support_service.evidence_text is None:
        status = DiagnosisStatus.CUT
        reason = "図面に記載がないため、削除できる可能性が高いです。"
    elif is_unconfirmed:
        status = DiagnosisStatus.REQUIRES_CONFIRMATION
        reason = UNCERTAIN_READING
    else:
        status = DiagnosisStatus.NEGOTIABLE
        reason = "任意加入の可能性があります。確認を推奨します。"

    billed = _yen(amount)
    return DiagnosisItem(
        name="24時間サポート等",
        price_original=billed,
        price_fair=0 if status == DiagnosisStatus.CUT else billed,
        status=status,
        reason=reason,
        evidence=_evidence(flyer.support_service.evidence_text, estimate.support_service.evidence_text),
        requires_confirmation=is_unconfirmed,
        confidence=estimate.support_service.confidence,
    )


def diagnose_key_exchange(
    flyer: ExtractedFacts, estimate: ExtractedFacts, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    """Lock replacement is the landlord's cost unless the flyer says otherwise."""
    amount = estimate.key_exchange.numeric()
    if amount is None:
        return None
    is_unconfirmed = "key_exchange" in unconfirmed

    if flyer.key_exchange.evidence_text is not None:
        status = _status_or_confirm(is_unconfirmed)
        reason = UNCERTAIN_READING if is_unconfirmed else "図面に記載があるため、支払いが必要です。"
    else:
        status = DiagnosisStatus.NEGOTIABLE
        reason = "図面に記載がないため、ガイドライン通りオーナー負担にできる可能性があります。"

    billed = _yen(amount)
    return DiagnosisItem(
        name="鍵交換",
        price_original=billed,
        price_fair=0 if status == DiagnosisStatus.NEGOTIABLE else billed,
        status=status,
        reason=reason,
        evidence=_evidence(flyer.key_exchange.evidence_text, estimate.key_exchange.evidence_text),
        requires_confirmation=is_unconfirmed,
        confidence=estimate.key_exchange.confidence,
    )


def diagnose_cleaning(
    flyer: ExtractedFacts, estimate: ExtractedFacts, unconfirmed: Sequence[str]
) -> DiagnosisItem | None:
    amount = estimate.cleaning_fee.numeric()
    if amount is None:
        return None
    is_unconfirmed = "cleaning_fee" in unconfirmed

    return DiagnosisItem(
        name="クリーニング",
        price_original=_yen(amount),
        price_fair=_yen(amount),
        status=_status_or_confirm(is_unconfirmed),
        reason=UNCERTAIN_READING if is_unconfirmed else "退去時クリーニングは一般的です。",
        evidence=_evidence(
            flyer.cleaning_fee.evidence_text, estimate.cleaning_fee.evidence_text, show_flyer=False
        ),
        requires_confirmation=is_unconfirmed,
        confidence=estimate.cleaning_fee.confidence,
    )


def find_flyer_counterpart(item: OtherItem, flyer: ExtractedFacts) -> OtherItem | None:
    """Match by substring containment in either direction.

    Crude: "消毒" matches "消毒・抗菌" but also any name containing it.
    Partial overlaps can misclassify; kept for predictability.
    """
    for candidate in flyer.other_items:
        if candidate.name in item.name or item.name in candidate.name:
            return candidate
    return None


def diagnose_other_item(item: OtherItem, flyer: ExtractedFacts) -> DiagnosisItem | None:
    """Any extra billed line must appear on the flyer, or it can be cut."""
    amount = item.value.numeric()
    if amount is None:
        return None

    counterpart = find_flyer_counterpart(item, flyer)
    billed = _yen(amount)
    if counterpart is not None:
        status = DiagnosisStatus.FAIR
        reason = "図面に記載があります。"
    else:
        status = DiagnosisStatus.CUT
        reason = "図面に記載がないため、削除できる可能性が高いです。"

    return DiagnosisItem(
        name=item.name,
        price_original=billed,
        price_fair=billed if status == DiagnosisStatus.FAIR else 0,
        status=status,
        reason=reason,
        evidence=_evidence(
            counterpart.value.evidence_text if counterpart else None,
            item.value.evidence_text,
            show_flyer=False,
        ),
        requires_confirmation=False,
        confidence=item.value.confidence,
    )


# ─── Aggregates ──────────────────────────────────────────────────────


def calculate_risk_score(
    items: Sequence[DiagnosisItem], discount_amount: int, total_original: int
) -> int:
    """clamp(0, 100, discount% + 10 per cut + 5 per negotiable)."""
    ratio = Decimal(discount_amount) / Decimal(total_original) if total_original else Decimal(0)
    cut_count = sum(1 for i in items if i.status == DiagnosisStatus.CUT)
    negotiable_count = sum(1 for i in items if i.status == DiagnosisStatus.NEGOTIABLE)

    score = ratio * 100 + RISK_WEIGHT_CUT * cut_count + RISK_WEIGHT_NEGOTIABLE * negotiable_count
    return max(0, min(100, _yen(score)))


def evaluate_extraction_quality(flyer: ExtractedFacts) -> ExtractionQuality:
    """Coarse tier for how much of the flyer we could actually read."""
    total_nulls = len(null_fields(flyer))
    critical_nulls = sum(
        1 for name in QUALITY_CRITICAL_FIELDS if flyer.get_field(name).value is None
    )
    if critical_nulls == 0 and total_nulls < 3:
        return ExtractionQuality.HIGH
    if critical_nulls <= 1 and total_nulls < 5:
        return ExtractionQuality.MEDIUM
    return ExtractionQuality.LOW


def field_display_name(field_name: str) -> str:
    return FIELD_LABELS.get(field_name, field_name)


def generate_pro_review(
    items: Sequence[DiagnosisItem], discount_amount: int, unconfirmed: Sequence[str]
) -> str:
    """Deterministic narrative: summary, unconfirmed block, talking points."""
    lines: list[str] = []

    if discount_amount > LARGE_DISCOUNT_THRESHOLD:
        lines.append(f"【総括】約{discount_amount:,}円の削減可能性があります。交渉を推奨します。")
    elif discount_amount > 0:
        lines.append(f"【総括】約{discount_amount:,}円の削減可能性があります。")
    else:
        lines.append("【総括】おおむね適正な見積もりです。")
    lines.append("")

    if unconfirmed:
        lines.append("【要確認】以下の項目は読み取りに不確実性があります：")
        lines.extend(f"・{field_display_name(name)}" for name in unconfirmed)
        lines.append("")

    points = [i for i in items if i.status == DiagnosisStatus.CUT]
    points += [i for i in items if i.status == DiagnosisStatus.NEGOTIABLE]
    if points:
        lines.append("【ポイント】")
        lines.extend(f"・{item.name}: {item.reason}" for item in points)

    return "\n".join(lines).strip()


def _text_value(field: EvidencedField) -> str | None:
    return None if field.value is None else str(field.value)


# ─── Orchestrator ────────────────────────────────────────────────────


def diagnose(
    flyer: ExtractedFacts,
    estimate: ExtractedFacts,
    unconfirmed_fields: Sequence[str] = (),
) -> DiagnosisResult:
    """Run every category rule and aggregate. Pure and deterministic."""
    unconfirmed = list(unconfirmed_fields)
    rent = calculation_rent(flyer, estimate)

    candidates: list[DiagnosisItem | None] = [
        diagnose_deposit(flyer, estimate, rent, unconfirmed),
        diagnose_key_money(flyer, estimate, rent, unconfirmed),
        diagnose_brokerage_fee(flyer, estimate, rent, unconfirmed),
        diagnose_guarantee_fee(flyer, estimate, unconfirmed),
        diagnose_fire_insurance(flyer, estimate, unconfirmed),
        diagnose_support_service(flyer, estimate, unconfirmed),
        diagnose_key_exchange(flyer, estimate, unconfirmed),
        diagnose_cleaning(flyer, estimate, unconfirmed),
    ]
    candidates.extend(diagnose_other_item(item, flyer) for item in estimate.other_items)
    items = [item for item in candidates if item is not None]

    # Rent and management fee are owed as billed; they count toward totals only.
    pass_through = _yen(estimate.rent.numeric() or 0) + _yen(estimate.management_fee.numeric() or 0)
    total_original = sum(i.price_original or 0 for i in items) + pass_through
    total_fair = sum(i.price_fair or 0 for i in items) + pass_through
    discount_amount = total_original - total_fair

    result = DiagnosisResult(
        property_name=_text_value(estimate.property_name) or _text_value(flyer.property_name) or "不明",
        room_number=_text_value(estimate.room_number) or _text_value(flyer.room_number) or "不明",
        items=items,
        total_original=total_original,
        total_fair=total_fair,
        discount_amount=discount_amount,
        risk_score=calculate_risk_score(items, discount_amount, total_original),
        pro_review=generate_pro_review(items, discount_amount, unconfirmed),
        has_unconfirmed_items=bool(unconfirmed),
        unconfirmed_item_names=unconfirmed,
        extraction_quality=evaluate_extraction_quality(flyer),
        extraction_log=ExtractionLog(
            flyer_extracted=flyer.total_items_found > 0,
            estimate_extracted=estimate.total_items_found > 0,
            final_null_fields=null_fields(flyer),
        ),
    )

    logger.debug(
        "diagnosis: %d item(s), original=%d fair=%d discount=%d risk=%d",
        len(items), total_original, total_fair, discount_amount, result.risk_score,
    )
    return result
