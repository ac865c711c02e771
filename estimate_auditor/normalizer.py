"""
Evidence enforcement and shorthand resolution for extracted facts.

Listing sheets are written in a dense shorthand ("礼1", "敷礼 0/1", "仲介無料").
This module turns that shorthand into canonical month counts and, above all,
decides when a zero is really a zero.

Rules:
  1. No evidence_text → value is None. Always.
  2. value == 0 only survives if the evidence explicitly says zero
     ("なし", "0円", "無料", "礼0" ...). "Not written" is None, never 0.
  3. Table lookup beats generic number parsing.

normalize_facts() is pure and idempotent: normalizing normalized facts is a no-op.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Union

from .models import EvidencedField, ExtractedFacts

logger = logging.getLogger(__name__)

MonthsTable = dict[str, Union[int, float, None]]

# Marks "this text is not shorthand we know" as opposed to "shorthand for unknown".
_UNRESOLVED = object()


# ─── Shorthand Tables ───────────────────────────────────────────────
# Keys are compacted (see compact()). A None value means the notation
# explicitly says "undetermined" (相談, 未定, -) and must stay null.

_UNDETERMINED: MonthsTable = {
    "-": None,
    "ー": None,
    "—": None,
    "未定": None,
    "相談": None,
    "応相談": None,
    "要相談": None,
    "別途": None,
    "別途相談": None,
    "お問い合わせ": None,
    "問合せ": None,
}

KEY_MONEY_PATTERNS: MonthsTable = {
    "礼0": 0,
    "礼なし": 0,
    "礼金なし": 0,
    "礼金0": 0,
    "礼金0ヶ月": 0,
    "礼金無し": 0,
    "礼金無": 0,
    "なし": 0,
    "無し": 0,
    "無": 0,
    "0": 0,
    "0ヶ月": 0,
    "ゼロ": 0,
    "礼1": 1,
    "礼金1": 1,
    "礼金1ヶ月": 1,
    "1": 1,
    "1ヶ月": 1,
    "礼2": 2,
    "礼金2": 2,
    "礼金2ヶ月": 2,
    "2": 2,
    "2ヶ月": 2,
    **_UNDETERMINED,
}

DEPOSIT_PATTERNS: MonthsTable = {
    "敷0": 0,
    "敷なし": 0,
    "敷金なし": 0,
    "敷金0": 0,
    "敷金0ヶ月": 0,
    "敷金無し": 0,
    "敷金無": 0,
    "敷1": 1,
    "敷金1": 1,
    "敷金1ヶ月": 1,
    "敷2": 2,
    "敷金2": 2,
    "敷金2ヶ月": 2,
    **_UNDETERMINED,
}

BROKERAGE_FEE_PATTERNS: MonthsTable = {
    "仲介手数料無料": 0,
    "仲介無料": 0,
    "手数料無料": 0,
    "0円": 0,
    "無料": 0,
    "0.5ヶ月": 0.5,
    "0.5": 0.5,
    "半月": 0.5,
    "1ヶ月": 1,
    "1.0ヶ月": 1,
    "1": 1,
    "1.1ヶ月": 1.1,
}

# "敷礼 1/2" → deposit 1 month, key money 2 months
COMBINED_DEPOSIT_KEY_MONEY_PATTERNS: dict[str, tuple[int, int]] = {
    "敷礼0/0": (0, 0),
    "敷礼0/1": (0, 1),
    "敷礼1/0": (1, 0),
    "敷礼1/1": (1, 1),
    "敷礼1/2": (1, 2),
    "敷礼2/1": (2, 1),
    "敷礼2/2": (2, 2),
    "0/0": (0, 0),
    "0/1": (0, 1),
    "1/0": (1, 0),
    "1/1": (1, 1),
    "1/2": (1, 2),
}

_MONTHS_RE = re.compile(r"(\d+(?:\.\d+)?)(?:ヶ月)?")
_COMBINED_RE = re.compile(r"敷礼(\d+(?:\.\d+)?)/(\d+(?:\.\d+)?)")
_AMOUNT_RE = re.compile(r"(\d+(?:\.\d+)?)(万)?")


# ─── Zero Evidence ──────────────────────────────────────────────────

ZERO_EVIDENCE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"礼0(?![\d.])",
        r"礼なし",
        r"礼金なし",
        r"礼金0(?![\d.])",
        r"礼金無",
        r"敷0(?![\d.])",
        r"敷なし",
        r"敷金なし",
        r"敷金0(?![\d.])",
        r"敷金無",
        r"なし",
        r"無し",
        r"無料",
        r"ゼロ",
        r"(?<![\d,.])0円",
        r"¥0(?![\d,.])",
        r"^無$",
        r"^0$",
        r"^0ヶ月$",
        r"(?:^|/)0(?:/|$)",  # combined notation with a zero side: "0/1", "1/0"
        r"none",
        r"free",
        r"nocharge",
        r"nofee",
        r"(?<!non)zero",
        r"(?<![\d,.])0yen",
        r"^0months?$",
    )
)


def compact(text: str) -> str:
    """Canonical form for table lookups.

    NFKC folds full-width digits and slashes; whitespace is dropped; the
    several ways of writing "months" collapse to ヶ月.
    """
    folded = unicodedata.normalize("NFKC", text).strip()
    folded = re.sub(r"\s+", "", folded)
    for variant in ("ケ月", "か月", "カ月", "ヵ月", "箇月", "ヶ月"):
        folded = folded.replace(variant, "ヶ月")
    return folded


def is_valid_zero_evidence(evidence_text: str | None) -> bool:
    """True if the evidence text explicitly states a zero amount."""
    if not evidence_text:
        return False
    normalized = compact(evidence_text).lower()
    return any(pattern.search(normalized) for pattern in ZERO_EVIDENCE_PATTERNS)


# ─── Shorthand Resolution ───────────────────────────────────────────


def _to_number(text: str) -> int | float:
    number = float(text)
    return int(number) if number.is_integer() else number


def resolve_months(evidence_text: str | None, table: MonthsTable) -> object:
    """Resolve a month notation via the table, then by generic parsing.

    Returns a number, None (explicitly undetermined), or _UNRESOLVED.
    """
    if not evidence_text:
        return _UNRESOLVED
    key = compact(evidence_text)
    if key in table:
        return table[key]
    match = _MONTHS_RE.fullmatch(key)
    if match:
        return _to_number(match.group(1))
    return _UNRESOLVED


def split_combined(evidence_text: str | None) -> tuple[int | float, int | float] | None:
    """Split a joint deposit/key-money notation into (deposit, key_money)."""
    if not evidence_text:
        return None
    key = compact(evidence_text)
    if key in COMBINED_DEPOSIT_KEY_MONEY_PATTERNS:
        return COMBINED_DEPOSIT_KEY_MONEY_PATTERNS[key]
    match = _COMBINED_RE.fullmatch(key)
    if match:
        return _to_number(match.group(1)), _to_number(match.group(2))
    return None


def parse_amount(text: str | None) -> int | float | None:
    """Parse a yen amount as printed: "¥15,000", "15,000円", "7.5万円"."""
    if text is None:
        return None
    cleaned = unicodedata.normalize("NFKC", str(text))
    cleaned = re.sub(r"[,\s円¥]", "", cleaned)
    match = _AMOUNT_RE.fullmatch(cleaned)
    if not match:
        return None
    amount = float(match.group(1))
    if match.group(2):
        amount *= 10_000
    return int(amount) if amount.is_integer() else amount


def _same_number(a: object, b: object) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return float(a) == float(b)
    return False


def _apply_resolution(field: EvidencedField, resolved: object) -> EvidencedField:
    if resolved is _UNRESOLVED:
        return field
    if resolved is None:
        if field.value is None:
            return field
        return field.model_copy(update={
            "value": None,
            "note": f"'{field.evidence_text}' does not fix an amount",
        })
    if field.value is not None and _same_number(field.value, resolved):
        return field
    return field.model_copy(update={"value": resolved})


def _resolve_deposit_and_key_money(
    deposit: EvidencedField, key_money: EvidencedField
) -> tuple[EvidencedField, EvidencedField]:
    """Resolve both month fields, splitting a joint notation across them."""
    deposit_split = split_combined(deposit.evidence_text)
    key_split = split_combined(key_money.evidence_text)

    if deposit_split is not None:
        deposit = _apply_resolution(deposit, deposit_split[0])
        if key_money.evidence_text is None:
            key_money = deposit.model_copy(update={"value": deposit_split[1], "note": None})
    if key_split is not None:
        key_money = _apply_resolution(key_money, key_split[1])
        if deposit.evidence_text is None:
            deposit = key_money.model_copy(update={"value": key_split[0], "note": None})

    if deposit_split is None and split_combined(deposit.evidence_text) is None:
        deposit = _apply_resolution(deposit, resolve_months(deposit.evidence_text, DEPOSIT_PATTERNS))
    if key_split is None and split_combined(key_money.evidence_text) is None:
        key_money = _apply_resolution(
            key_money, resolve_months(key_money.evidence_text, KEY_MONEY_PATTERNS)
        )
    return deposit, key_money


# ─── Field & Fact Normalization ─────────────────────────────────────


def _is_numeric_zero(value: object) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value == 0


def normalize_field(field: EvidencedField) -> EvidencedField:
    """Enforce evidence-or-null and explicit-zero on one field."""
    if field.evidence_text is None or not field.evidence_text.strip():
        if field.value is None and field.evidence_text is None:
            return field
        return field.model_copy(update={
            "value": None,
            "evidence_text": None,
            "note": field.note or "value discarded: no evidence_text",
        })

    if _is_numeric_zero(field.value) and not is_valid_zero_evidence(field.evidence_text):
        return field.model_copy(update={
            "value": None,
            "note": f"zero discarded: '{field.evidence_text}' does not state zero",
        })

    return field


def normalize_facts(facts: ExtractedFacts) -> ExtractedFacts:
    """Normalize a whole fact set. Pure; returns a new instance."""
    deposit, key_money = _resolve_deposit_and_key_money(
        facts.deposit_months, facts.key_money_months
    )
    resolved: dict[str, EvidencedField] = {
        "deposit_months": deposit,
        "key_money_months": key_money,
        "brokerage_fee_months": _apply_resolution(
            facts.brokerage_fee_months,
            resolve_months(facts.brokerage_fee_months.evidence_text, BROKERAGE_FEE_PATTERNS),
        ),
    }

    updates: dict[str, object] = {}
    for name, field in facts.iter_fields():
        before = resolved.get(name, field)
        after = normalize_field(before)
        if after.value != field.value:
            logger.debug(
                "normalized %s.%s: %r -> %r (evidence=%r)",
                facts.source.value, name, field.value, after.value, after.evidence_text,
            )
        updates[name] = after

    updates["other_items"] = [
        item.model_copy(update={"value": normalize_field(item.value)})
        for item in facts.other_items
    ]
    return facts.model_copy(update=updates)


# ─── Introspection ──────────────────────────────────────────────────

# Cost fields whose absence lowers extraction quality.
NULL_CHECK_FIELDS: tuple[str, ...] = (
    "rent",
    "management_fee",
    "deposit_months",
    "key_money_months",
    "brokerage_fee",
    "brokerage_fee_months",
    "guarantee_fee",
    "fire_insurance",
    "support_service",
    "key_exchange",
    "cleaning_fee",
    "free_rent_months",
)


def null_fields(facts: ExtractedFacts) -> list[str]:
    """Names of the cost fields that ended up null."""
    return [name for name in NULL_CHECK_FIELDS if facts.get_field(name).value is None]
