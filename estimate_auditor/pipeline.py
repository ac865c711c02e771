"""
Main audit pipeline — orchestrates the full workflow.

Flow:
  ┌────────────┐   ┌──────────────┐
  │   Flyer    │   │   Estimate   │
  │  images    │   │   images     │
  └─────┬──────┘   └──────┬───────┘
        │                 │
  ┌─────▼──────┐   ┌──────▼───────┐
  │  Extract   │   │   Extract    │   ← Concurrent, independent failures
  └─────┬──────┘   └──────┬───────┘
  ┌─────▼──────┐   ┌──────▼───────┐
  │ Normalize  │   │  Normalize   │   ← Evidence-or-null, shorthand
  └─────┬──────┘   └──────┬───────┘
        └────────┬────────┘
          ┌──────▼──────┐
          │  Conflicts  │   ← Flyer vs. estimate
          └──────┬──────┘
          ┌──────▼──────┐
          │   Verify    │   ← Only if conflicts; flyer images only
          └──────┬──────┘
          ┌──────▼──────┐
          │    Merge    │   ← Onto flyer facts; unconfirmed list
          └──────┬──────┘
          ┌──────▼──────┐
          │  Diagnose   │   ← Pure decision table
          └─────────────┘

Design principles:
  - The only network calls are extraction and verification; both degrade, never raise.
  - Everything else is a pure function of its inputs.
  - The request either finishes within its deadline or fails outright;
    a half-reconciled result is never returned as final.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .config import AuditorSettings
from .conflicts import detect_conflicts
from .diagnosis import diagnose
from .exceptions import DiagnosisTimeoutError
from .extractor_llm import FactExtractor, OpenAIVisionExtractor
from .models import (
    DiagnosisResult,
    ExtractedFacts,
    ExtractionSource,
    ImageInput,
    VerificationResult,
)
from .normalizer import normalize_facts
from .verification import merge_facts, unconfirmed_fields, verify_conflicts

logger = logging.getLogger(__name__)


class DiagnosisPipeline:
    """Orchestrates extraction, reconciliation and diagnosis for one request.

    Usage:
        pipeline = DiagnosisPipeline()
        result = pipeline.run(flyer_images, estimate_images)
        for item in result.items:
            print(item.name, item.status, item.price_original, item.price_fair)

    Pass any FactExtractor to run without a live model (tests, replays).
    """

    def __init__(
        self,
        extractor: FactExtractor | None = None,
        settings: AuditorSettings | None = None,
        log: logging.Logger | None = None,
    ):
        self.settings = settings or AuditorSettings.from_env()
        self.extractor: FactExtractor = extractor or OpenAIVisionExtractor(
            api_key=self.settings.openai_api_key,
            model=self.settings.model,
            timeout=self.settings.llm_timeout_seconds,
        )
        self.log = log or logger

    def run(
        self, flyer_images: Sequence[ImageInput], estimate_images: Sequence[ImageInput]
    ) -> DiagnosisResult:
        """Synchronous entry point. Raises DiagnosisTimeoutError past the deadline."""
        return asyncio.run(self.run_async(flyer_images, estimate_images))

    async def run_async(
        self, flyer_images: Sequence[ImageInput], estimate_images: Sequence[ImageInput]
    ) -> DiagnosisResult:
        timeout = self.settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._run(list(flyer_images), list(estimate_images)), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            self.log.error("Diagnosis exceeded its %.1fs deadline", timeout)
            raise DiagnosisTimeoutError(
                f"Diagnosis did not finish within {timeout:.1f}s",
                {"timeout_seconds": timeout},
            ) from e

    async def _run(
        self, flyer_images: list[ImageInput], estimate_images: list[ImageInput]
    ) -> DiagnosisResult:
        # ── Step 1: Extract both documents concurrently ─────────────
        self.log.info(
            "Starting extraction (flyer: %d image(s), estimate: %d image(s))",
            len(flyer_images), len(estimate_images),
        )
        flyer_raw, estimate_raw = await asyncio.gather(
            self._extract(flyer_images, ExtractionSource.FLYER),
            self._extract(estimate_images, ExtractionSource.ESTIMATE),
        )

        # ── Step 2: Normalize (never trust the model's own claims) ──
        flyer = normalize_facts(flyer_raw)
        estimate = normalize_facts(estimate_raw)

        # ── Step 3: Detect cross-source conflicts ───────────────────
        conflicts = detect_conflicts(flyer, estimate)
        self.log.info(
            "Detected %d conflict(s): %s",
            len(conflicts), ", ".join(c.field_name for c in conflicts) or "none",
        )

        # ── Step 4: Re-verify only what disagrees ───────────────────
        results: dict[str, VerificationResult] = {}
        if conflicts:
            results = await verify_conflicts(self.extractor, conflicts, flyer_images)

        # ── Step 5: Merge verification outcomes onto the flyer ──────
        merged_flyer, merged_estimate = merge_facts(flyer, estimate, results)
        unconfirmed = unconfirmed_fields(results)

        # ── Step 6: Diagnose (pure decision table) ──────────────────
        result = diagnose(merged_flyer, merged_estimate, unconfirmed)

        trace = result.extraction_log
        assert trace is not None
        result = result.model_copy(update={
            "extraction_log": trace.model_copy(update={
                "conflicts_detected": [
                    f"{c.field_name}:{c.conflict_type.value}" for c in conflicts
                ],
                "verification_performed": [
                    f"{name}:{r.status.value}" for name, r in results.items()
                ],
            })
        })

        self.log.info(
            "Diagnosis complete: %d item(s), original=%d, fair=%d, risk=%d, unconfirmed=%s",
            len(result.items), result.total_original, result.total_fair,
            result.risk_score, result.unconfirmed_item_names or "none",
        )
        return result

    async def _extract(
        self, images: list[ImageInput], source: ExtractionSource
    ) -> ExtractedFacts:
        """One source's failure boundary: anything that escapes becomes empty facts."""
        try:
            return await self.extractor.extract(images, source)
        except Exception as e:
            self.log.error("%s extraction raised, degrading to empty facts: %s", source.value, e)
            return ExtractedFacts.empty(source)
