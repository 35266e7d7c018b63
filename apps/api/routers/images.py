"""Coloring page generation router."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from database import LedgerStore, get_store
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.access_gate import REASON_INSUFFICIENT_CREDITS
from services.generation import (
    GenerationDenied,
    GenerationFailed,
    ImageGenerator,
    PortraitJob,
    get_image_generator,
    run_billed_generation,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class GeneratePortraitRequest(BaseModel):
    photos: List[str] = Field(min_length=1, max_length=6)
    page_type: Literal["facial_portrait", "cartoon_portrait"] = "facial_portrait"
    background: Literal["plain", "mindful"] = "plain"
    name_message: Optional[str] = Field(default=None, max_length=200)
    scene_description: Optional[str] = Field(default=None, max_length=500)
    individual_names: List[str] = Field(default_factory=list, max_length=6)
    individual_activities: List[str] = Field(default_factory=list, max_length=6)
    output_format: str = "png"


@router.post("/generate")
async def generate_coloring_page(
    request: GeneratePortraitRequest,
    _rate_limit: None = Depends(rate_limit("image_generate", limit=30, window_seconds=3600, per_session=True)),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_store),
    generator: ImageGenerator = Depends(get_image_generator),
):
    job = PortraitJob(
        photos=request.photos,
        page_type=request.page_type,
        background=request.background,
        name_message=request.name_message,
        scene_description=request.scene_description,
        individual_names=request.individual_names,
        individual_activities=request.individual_activities,
        output_format=request.output_format,
    )

    try:
        return await run_billed_generation(store, generator, auth.email, job)
    except GenerationDenied as exc:
        status_code = 402 if exc.decision.reason == REASON_INSUFFICIENT_CREDITS else 403
        raise HTTPException(status_code=status_code, detail=exc.decision.to_detail()) from exc
    except GenerationFailed as exc:
        logger.warning("Generation failed for %s, no credits charged: %s", auth.email, exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "GENERATION_FAILED", "message": str(exc), "charged": 0},
        ) from exc
