"""
Rental Estimate Auditor — FastAPI Server
=========================================

RESTful API for auditing a move-in cost estimate against its listing flyer.

Endpoints:
    POST /diagnose          Upload flyer + estimate photos, get a diagnosis
    GET  /health            Health check / readiness probe

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production

Docs:
    http://localhost:8000/docs             # Swagger UI (auto-generated)
    http://localhost:8000/redoc            # ReDoc (alternative)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, UploadFile
from pydantic import BaseModel

from estimate_auditor import __version__
from estimate_auditor.exceptions import DiagnosisTimeoutError
from estimate_auditor.extractor_llm import OpenAIVisionExtractor
from estimate_auditor.models import DiagnosisResult, ImageInput
from estimate_auditor.pipeline import DiagnosisPipeline

load_dotenv()

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1_048_576


# ─── Application Lifespan (pre-warm pipeline) ───────────────────────

_pipeline: DiagnosisPipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline (settings + model client) once on startup."""
    global _pipeline  # noqa: PLW0603
    _pipeline = DiagnosisPipeline()
    yield
    _pipeline = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Rental Estimate Auditor API",
    description=(
        "Evidence-first audit of Japanese rental move-in cost estimates. "
        "A vision model reads the flyer and the estimate; deterministic code "
        "reconciles them and decides which charges are fair, negotiable or cuttable."
    ),
    version=__version__,
    lifespan=lifespan,
)


# ─── Response Schemas ────────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str
    version: str
    model: str
    llm_configured: bool


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_pipeline() -> DiagnosisPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


async def _read_images(files: Optional[list[UploadFile]], label: str) -> list[ImageInput]:
    """Read uploads in order. Empty parts (browsers send them) are skipped."""
    images: list[ImageInput] = []
    for upload in files or []:
        if upload.size and upload.size > MAX_IMAGE_BYTES:
            raise HTTPException(
                status_code=413, detail=f"{label} image {upload.filename!r} too large (max 10 MB)"
            )
        data = await upload.read()
        if not data:
            continue
        images.append(ImageInput(data=data, mime_type=upload.content_type or "image/jpeg"))
    return images


# ─── Endpoints ───────────────────────────────────────────────────────


@app.post(
    "/diagnose",
    summary="Audit an estimate against its listing flyer",
    tags=["Diagnosis"],
    responses={
        413: {"description": "An image is too large (max 10 MB)"},
        422: {"description": "No estimate image supplied"},
        503: {"description": "Pipeline not yet initialised"},
        504: {"description": "Diagnosis did not finish within the deadline"},
    },
)
async def diagnose_estimate(
    estimate: Optional[list[UploadFile]] = File(default=None),
    flyer: Optional[list[UploadFile]] = File(default=None),
) -> DiagnosisResult:
    """Upload photos of the estimate (required) and the flyer (optional).

    Returns the per-item verdicts with:
    - **items**: each billed line with original and fair price, status and evidence
    - **discount_amount** / **risk_score**: how much could be saved, and how urgently
    - **unconfirmed_item_names**: fields nobody could confirm; check these by hand
    - **extraction_log**: what was read, what conflicted, what was re-verified
    """
    pipeline = _get_pipeline()

    estimate_images = await _read_images(estimate, "Estimate")
    if not estimate_images:
        raise HTTPException(status_code=422, detail="At least one estimate image is required")
    flyer_images = await _read_images(flyer, "Flyer")

    try:
        return await pipeline.run_async(flyer_images, estimate_images)
    except DiagnosisTimeoutError as e:
        logger.error("Request aborted [%s]: %s", e.code, e)
        raise HTTPException(status_code=504, detail=str(e)) from e


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    """Returns service status and configuration info."""
    pipeline = _get_pipeline()
    extractor = pipeline.extractor
    return HealthResponse(
        status="healthy",
        version=__version__,
        model=pipeline.settings.model,
        llm_configured=(
            extractor.available if isinstance(extractor, OpenAIVisionExtractor) else True
        ),
    )
