"""
End-to-end pipeline tests with a scripted extractor.

Covers the stage wiring: concurrent extraction, normalization before
comparison, verification gated on conflicts and scoped to flyer images,
the unconfirmed list reaching the result, and the request deadline.
"""

from __future__ import annotations

import logging

import pytest
from factories import ESTIMATE, FLYER, FakeExtractor, make_facts, make_field, make_image

from estimate_auditor.config import (
    DEFAULT_MODEL,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    AuditorSettings,
)
from estimate_auditor.exceptions import DiagnosisTimeoutError
from estimate_auditor.models import DiagnosisStatus, ExtractionQuality
from estimate_auditor.pipeline import DiagnosisPipeline

SETTINGS = AuditorSettings(request_timeout_seconds=5.0)


# ─── Test Data ───────────────────────────────────────────────────────


def _flyer(**fields):
    base = {
        "rent": (100000, "賃料 10万円"),
        "management_fee": (5000, "管理費 5,000円"),
        "key_money_months": (None, "礼0"),
    }
    return make_facts(FLYER, **{**base, **fields})


def _estimate(**fields):
    base = {
        "rent": (100000, "賃料 100,000円"),
        "management_fee": (5000, "管理費 5,000円"),
        "deposit_months": (2, "敷金 2ヶ月"),
        "key_money_months": (0, "礼金 0円"),
        "fire_insurance": (25000, "火災保険 25,000円"),
    }
    return make_facts(ESTIMATE, **{**base, **fields})


FLYER_IMAGES = [make_image(b"flyer-1"), make_image(b"flyer-2")]
ESTIMATE_IMAGES = [make_image(b"estimate-1")]


def _run(extractor, flyer_images=FLYER_IMAGES, estimate_images=ESTIMATE_IMAGES, **kwargs):
    pipeline = DiagnosisPipeline(extractor=extractor, settings=kwargs.pop("settings", SETTINGS), **kwargs)
    return pipeline.run(flyer_images, estimate_images)


# ═══════════════════════════════════════════════════════════════════════
# VERIFICATION FLOW
# ═══════════════════════════════════════════════════════════════════════


class TestVerificationFlow:
    """Flyer deposit missing, estimate bills 2 months."""

    def test_conflict_is_reverified_against_flyer_images_only(self):
        extractor = FakeExtractor(
            flyer=_flyer(), estimate=_estimate(),
            verified={"deposit_months": make_field(2, "敷2", 0.95)},
        )

        result = _run(extractor)

        assert extractor.verify_calls == [("deposit_months", FLYER_IMAGES)]
        assert result.extraction_log.conflicts_detected == [
            "deposit_months:flyer_null_estimate_exists"
        ]
        assert result.extraction_log.verification_performed == ["deposit_months:confirmed"]
        assert result.has_unconfirmed_items is False

    def test_unconfirmed_field_reaches_the_result(self):
        extractor = FakeExtractor(flyer=_flyer(), estimate=_estimate())

        result = _run(extractor)

        assert result.unconfirmed_item_names == ["deposit_months"]
        assert result.has_unconfirmed_items is True
        deposit = next(i for i in result.items if i.name == "敷金")
        assert deposit.status == DiagnosisStatus.REQUIRES_CONFIRMATION
        assert "【要確認】" in result.pro_review

    def test_no_conflicts_means_no_verification(self):
        extractor = FakeExtractor(
            flyer=_flyer(deposit_months=(2, "敷2")), estimate=_estimate()
        )
        result = _run(extractor)
        assert extractor.verify_calls == []
        assert result.extraction_log.conflicts_detected == []
        assert result.extraction_log.verification_performed == []

    def test_confirmed_zero_key_money_is_cut(self):
        extractor = FakeExtractor(
            flyer=_flyer(deposit_months=(2, "敷2")),
            estimate=_estimate(key_money_months=(1, "礼金 1ヶ月")),
            verified={"key_money_months": make_field(0, "礼0", 0.95)},
        )

        result = _run(extractor)

        key_money = next(i for i in result.items if i.name == "礼金")
        assert key_money.status == DiagnosisStatus.CUT
        assert key_money.price_original == 100000
        assert key_money.price_fair == 0
        assert result.extraction_log.verification_performed == ["key_money_months:confirmed"]

    def test_zero_stated_in_words_is_cut(self):
        extractor = FakeExtractor(
            flyer=_flyer(deposit_months=(2, "敷2"), key_money_months=(0, "stated as zero")),
            estimate=_estimate(key_money_months=(1, "礼金 1ヶ月")),
            verified={"key_money_months": make_field(0, "stated as zero", 0.95)},
        )

        result = _run(extractor)

        key_money = next(i for i in result.items if i.name == "礼金")
        assert (key_money.status, key_money.price_fair) == (DiagnosisStatus.CUT, 0)
        assert key_money.evidence.flyer_evidence == "stated as zero"
        assert "key_money_months" not in result.unconfirmed_item_names

    def test_without_flyer_images_estimate_values_stay_unconfirmed(self):
        extractor = FakeExtractor(flyer=_flyer(), estimate=_estimate())

        result = _run(extractor, flyer_images=[])

        assert extractor.verify_calls == []
        assert result.extraction_log.flyer_extracted is False
        assert set(result.unconfirmed_item_names) == {
            "key_money_months", "deposit_months", "rent", "management_fee",
        }
        assert result.extraction_quality == ExtractionQuality.LOW


# ═══════════════════════════════════════════════════════════════════════
# NORMALIZATION & DEGRADATION
# ═══════════════════════════════════════════════════════════════════════


class TestPipelineRobustness:
    def test_shorthand_is_resolved_before_comparison(self):
        extractor = FakeExtractor(flyer=_flyer(deposit_months=(2, "敷2")), estimate=_estimate())
        result = _run(extractor)
        # "礼0" on the flyer resolves to 0 and agrees with the estimate's 0円
        assert "key_money_months:value_mismatch" not in result.extraction_log.conflicts_detected
        assert result.extraction_log.final_null_fields.count("key_money_months") == 0

    def test_unsupported_zero_never_reaches_diagnosis(self):
        extractor = FakeExtractor(
            flyer=_flyer(deposit_months=(2, "敷2")),
            estimate=_estimate(key_exchange=(0, "鍵交換")),
        )
        result = _run(extractor)
        assert all(item.name != "鍵交換" for item in result.items)

    def test_failed_flyer_extraction_degrades(self):
        extractor = FakeExtractor(
            flyer=_flyer(), estimate=_estimate(), fail_extract=[FLYER]
        )
        result = _run(extractor)
        assert result.extraction_log.flyer_extracted is False
        assert result.extraction_log.estimate_extracted is True
        assert result.items

    def test_fire_insurance_passes_through_the_whole_pipeline(self):
        extractor = FakeExtractor(flyer=_flyer(deposit_months=(2, "敷2")), estimate=_estimate())
        result = _run(extractor)
        fire = next(i for i in result.items if i.name == "火災保険")
        assert (fire.status, fire.price_fair) == (DiagnosisStatus.NEGOTIABLE, 16000)
        assert result.discount_amount == 9000

    def test_no_api_key_never_raises(self):
        pipeline = DiagnosisPipeline(settings=AuditorSettings())
        result = pipeline.run(FLYER_IMAGES, ESTIMATE_IMAGES)
        assert result.items == []
        assert result.property_name == "不明"
        assert result.has_unconfirmed_items is True
        assert result.extraction_quality == ExtractionQuality.LOW

    def test_extractions_run_for_both_sources(self):
        extractor = FakeExtractor(flyer=_flyer(), estimate=_estimate())
        _run(extractor)
        assert sorted(source.value for source, _ in extractor.extract_calls) == ["estimate", "flyer"]

    def test_extractions_overlap(self):
        # Each extraction takes 0.4 s; run back to back they would miss a 0.7 s deadline.
        extractor = FakeExtractor(
            flyer=_flyer(deposit_months=(2, "敷2")), estimate=_estimate(), delay=0.4
        )
        settings = AuditorSettings(request_timeout_seconds=0.7)

        result = _run(extractor, settings=settings)

        assert len(extractor.extract_calls) == 2
        assert result.extraction_log.flyer_extracted is True
        assert result.extraction_log.estimate_extracted is True


# ═══════════════════════════════════════════════════════════════════════
# DEADLINE & LOGGING
# ═══════════════════════════════════════════════════════════════════════


class TestDeadline:
    def test_overrun_raises_timeout_error(self):
        extractor = FakeExtractor(flyer=_flyer(), estimate=_estimate(), delay=1.0)
        settings = AuditorSettings(request_timeout_seconds=0.05)

        with pytest.raises(DiagnosisTimeoutError) as exc_info:
            _run(extractor, settings=settings)

        assert exc_info.value.code == "DIAGNOSIS_TIMEOUT"
        assert exc_info.value.details == {"timeout_seconds": 0.05}

    def test_injected_logger_receives_progress(self, caplog):
        log = logging.getLogger("tests.audit")
        extractor = FakeExtractor(flyer=_flyer(), estimate=_estimate())

        with caplog.at_level(logging.INFO, logger="tests.audit"):
            _run(extractor, log=log)

        messages = [r.getMessage() for r in caplog.records if r.name == "tests.audit"]
        assert any(m.startswith("Starting extraction") for m in messages)
        assert any(m.startswith("Diagnosis complete") for m in messages)


class TestSettings:
    def test_defaults(self):
        settings = AuditorSettings.from_env()
        assert settings.openai_api_key is None
        assert settings.model == DEFAULT_MODEL
        assert settings.request_timeout_seconds == DEFAULT_REQUEST_TIMEOUT_SECONDS

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("AUDITOR_MODEL", "gpt-4o")
        monkeypatch.setenv("AUDITOR_LLM_TIMEOUT_SECONDS", "30")
        settings = AuditorSettings.from_env()
        assert settings.openai_api_key == "sk-test"
        assert settings.model == "gpt-4o"
        assert settings.llm_timeout_seconds == 30.0

    @pytest.mark.parametrize("raw", ["soon", "0", "-5", " "])
    def test_invalid_timeout_falls_back(self, monkeypatch, raw):
        monkeypatch.setenv("AUDITOR_REQUEST_TIMEOUT_SECONDS", raw)
        assert AuditorSettings.from_env().request_timeout_seconds == DEFAULT_REQUEST_TIMEOUT_SECONDS
