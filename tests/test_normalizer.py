"""
Tests for evidence enforcement and shorthand resolution.

No model, no network: every rule here is plain code over plain strings.

Run: pytest tests/ -v
"""

from __future__ import annotations

import pytest
from factories import ESTIMATE, FLYER, make_facts, make_field

from estimate_auditor.models import EVIDENCED_FIELD_NAMES, EvidencedField, ExtractedFacts
from estimate_auditor.normalizer import (
    NULL_CHECK_FIELDS,
    compact,
    is_valid_zero_evidence,
    normalize_facts,
    normalize_field,
    null_fields,
    parse_amount,
    split_combined,
)


# ═══════════════════════════════════════════════════════════════════════
# EVIDENCE-OR-NULL (enforced at construction)
# ═══════════════════════════════════════════════════════════════════════


class TestEvidencedField:
    """A value with no evidence does not exist."""

    def test_value_without_evidence_is_discarded(self):
        field = EvidencedField(value=100000, evidence_text=None, confidence=0.9, source=FLYER)
        assert field.value is None
        assert field.note == "value discarded: no evidence_text"

    def test_blank_evidence_counts_as_missing(self):
        field = EvidencedField(value=1, evidence_text="   ", confidence=0.9, source=FLYER)
        assert field.value is None
        assert field.evidence_text is None

    def test_value_with_evidence_is_kept(self):
        field = make_field(80000, "賃料 8万円")
        assert field.value == 80000
        assert field.evidence_text == "賃料 8万円"

    def test_confidence_is_clamped(self):
        assert make_field(1, "礼1", confidence=1.7).confidence == 1.0
        assert make_field(1, "礼1", confidence=-0.3).confidence == 0.0

    def test_garbage_confidence_becomes_zero(self):
        field = EvidencedField(value=1, evidence_text="礼1", confidence="high", source=FLYER)
        assert field.confidence == 0.0

    def test_numeric_excludes_booleans_and_text(self):
        assert make_field(True, "税込").numeric() is None
        assert make_field("ABCマンション", "ABCマンション").numeric() is None
        assert make_field(0.5, "0.5ヶ月").numeric() == 0.5

    def test_empty_facts_have_every_field_null(self):
        facts = ExtractedFacts.empty(ESTIMATE)
        for name, field in facts.iter_fields():
            assert field.value is None, name
            assert field.source == ESTIMATE
        assert facts.total_items_found == 0

    def test_unknown_field_name_raises(self):
        with pytest.raises(KeyError):
            ExtractedFacts.empty(FLYER).get_field("parking_fee")


# ═══════════════════════════════════════════════════════════════════════
# ZERO EVIDENCE
# ═══════════════════════════════════════════════════════════════════════


class TestZeroEvidence:
    """Zero is only zero when the document says so."""

    @pytest.mark.parametrize(
        "text",
        ["礼0", "礼金なし", "敷なし", "なし", "無料", "仲介手数料無料", "0円", "¥0",
         "０円", "0", "0ヶ月", "0カ月", "敷礼 0/1", "1/0", "Free", "none",
         "stated as zero", "Zero", "No fee", "0 yen"],
    )
    def test_explicit_zero(self, text):
        assert is_valid_zero_evidence(text)

    @pytest.mark.parametrize(
        "text",
        [None, "", "10円", "100,000円", "礼10", "賃料", "1ヶ月", "敷1", "10",
         "nonzero", "10 yen"],
    )
    def test_not_a_zero(self, text):
        assert not is_valid_zero_evidence(text)

    def test_zero_without_zero_evidence_is_nulled(self):
        field = normalize_field(make_field(0, "鍵交換費用"))
        assert field.value is None
        assert field.note is not None and field.note.startswith("zero discarded")

    def test_zero_with_zero_evidence_survives(self):
        field = normalize_field(make_field(0, "礼0"))
        assert field.value == 0

    def test_zero_stated_in_words_survives_fact_normalization(self):
        facts = normalize_facts(make_facts(FLYER, key_money_months=(0, "stated as zero")))
        assert facts.key_money_months.value == 0
        assert facts.key_money_months.evidence_text == "stated as zero"

    def test_nonzero_is_untouched(self):
        field = make_field(16500, "鍵交換 16,500円")
        assert normalize_field(field) is field


# ═══════════════════════════════════════════════════════════════════════
# SHORTHAND RESOLUTION
# ═══════════════════════════════════════════════════════════════════════


class TestShorthand:
    """Table lookup beats generic parsing; undetermined stays null."""

    def test_compact_folds_width_and_month_variants(self):
        assert compact(" 礼金 １ カ月 ") == "礼金1ヶ月"
        assert compact("敷金2か月") == "敷金2ヶ月"

    def test_key_money_shorthand(self):
        facts = normalize_facts(make_facts(FLYER, key_money_months=(None, "礼1")))
        assert facts.key_money_months.value == 1

    def test_table_overrides_misread_value(self):
        facts = normalize_facts(make_facts(FLYER, key_money_months=(1, "礼0")))
        assert facts.key_money_months.value == 0

    def test_undetermined_notation_stays_null(self):
        facts = normalize_facts(make_facts(FLYER, deposit_months=(1, "相談")))
        assert facts.deposit_months.value is None
        assert facts.deposit_months.evidence_text == "相談"

    def test_generic_month_parsing(self):
        facts = normalize_facts(make_facts(FLYER, deposit_months=(None, "1.5ヶ月")))
        assert facts.deposit_months.value == 1.5

    def test_brokerage_half_month(self):
        facts = normalize_facts(make_facts(ESTIMATE, brokerage_fee_months=(None, "半月")))
        assert facts.brokerage_fee_months.value == 0.5

    def test_brokerage_free_is_zero(self):
        facts = normalize_facts(make_facts(FLYER, brokerage_fee_months=(1, "仲介無料")))
        assert facts.brokerage_fee_months.value == 0

    def test_unknown_notation_keeps_model_value(self):
        facts = normalize_facts(make_facts(FLYER, deposit_months=(1, "敷金 1ヶ月（85,000円）")))
        assert facts.deposit_months.value == 1


class TestCombinedNotation:
    """"敷礼 1/2" fills both month fields."""

    def test_split_combined(self):
        assert split_combined("敷礼 1/2") == (1, 2)
        assert split_combined("０/１") == (0, 1)
        assert split_combined("敷礼1.5/1") == (1.5, 1)
        assert split_combined("礼1") is None
        assert split_combined(None) is None

    def test_deposit_evidence_fills_key_money(self):
        facts = normalize_facts(make_facts(FLYER, deposit_months=(None, "敷礼 1/2")))
        assert facts.deposit_months.value == 1
        assert facts.key_money_months.value == 2
        assert facts.key_money_months.evidence_text == "敷礼 1/2"

    def test_zero_side_of_combined_is_valid_zero(self):
        facts = normalize_facts(make_facts(FLYER, key_money_months=(None, "敷礼 0/1")))
        assert facts.deposit_months.value == 0
        assert facts.key_money_months.value == 1

    def test_own_evidence_is_not_overwritten(self):
        facts = normalize_facts(
            make_facts(FLYER, deposit_months=(None, "敷礼 1/1"), key_money_months=(None, "礼0"))
        )
        assert facts.deposit_months.value == 1
        assert facts.key_money_months.value == 0
        assert facts.key_money_months.evidence_text == "礼0"


# ═══════════════════════════════════════════════════════════════════════
# WHOLE FACT SETS
# ═══════════════════════════════════════════════════════════════════════


class TestNormalizeFacts:
    def _raw(self) -> ExtractedFacts:
        return make_facts(
            FLYER,
            rent=(85000, "賃料 8.5万円"),
            deposit_months=(None, "敷礼 1/0"),
            brokerage_fee_months=(None, "0.5ヶ月"),
            key_exchange=(0, "鍵交換"),
            other_items=[("消毒料", 0, "消毒"), ("安心サポート", 16500, "16,500円")],
        )

    def test_invariant_holds_on_every_field(self):
        facts = normalize_facts(self._raw())
        for name in EVIDENCED_FIELD_NAMES:
            field = facts.get_field(name)
            if field.value is not None:
                assert field.evidence_text, name
            if field.value == 0 and not isinstance(field.value, bool):
                assert is_valid_zero_evidence(field.evidence_text), name

    def test_other_items_are_normalized(self):
        facts = normalize_facts(self._raw())
        assert facts.other_items[0].value.value is None
        assert facts.other_items[1].value.value == 16500

    def test_idempotent(self):
        once = normalize_facts(self._raw())
        twice = normalize_facts(once)
        assert twice.model_dump() == once.model_dump()

    def test_input_is_not_mutated(self):
        raw = self._raw()
        before = raw.model_dump()
        normalize_facts(raw)
        assert raw.model_dump() == before

    def test_null_fields_lists_unread_costs(self):
        facts = normalize_facts(self._raw())
        nulls = null_fields(facts)
        assert "rent" not in nulls
        assert "key_exchange" in nulls
        assert null_fields(ExtractedFacts.empty(FLYER)) == list(NULL_CHECK_FIELDS)


# ═══════════════════════════════════════════════════════════════════════
# AMOUNTS
# ═══════════════════════════════════════════════════════════════════════


class TestParseAmount:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("¥15,000", 15000),
            ("15,000円", 15000),
            ("７.５万円", 75000),
            ("8万", 80000),
            ("16500", 16500),
            ("0.5", 0.5),
        ],
    )
    def test_parses_printed_amounts(self, text, expected):
        assert parse_amount(text) == expected

    @pytest.mark.parametrize("text", [None, "", "相談", "1ヶ月", "10,000円～"])
    def test_rejects_non_amounts(self, text):
        assert parse_amount(text) is None
