"""Billed coloring-page generation: authorize, generate, then debit."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx
from fastapi import HTTPException, Request

from config import require_replicate_token, settings
from database import LedgerStore
from models.account import SubscriptionTier
from services.access_gate import AccessDecision, authorize
from services.credit_errors import CreditError
from services.credits import use_credits

logger = logging.getLogger(__name__)

VALID_OUTPUT_FORMATS = ("png", "jpeg", "webp")


class GenerationFailed(Exception):
    """The generation provider failed or timed out; nothing is charged."""


class GenerationDenied(Exception):
    def __init__(self, decision: AccessDecision):
        super().__init__(decision.message)
        self.decision = decision


@dataclass
class GeneratedImage:
    url: str
    metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PortraitJob:
    photos: List[str]
    page_type: str = "facial_portrait"
    background: str = "plain"
    name_message: Optional[str] = None
    scene_description: Optional[str] = None
    individual_names: List[str] = field(default_factory=list)
    individual_activities: List[str] = field(default_factory=list)
    output_format: str = "png"

    @property
    def is_multi_subject(self) -> bool:
        return len(self.photos) > 1


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, images: List[str], output_format: str) -> GeneratedImage:
        ...


def normalize_output_format(value: Optional[str]) -> str:
    normalized = str(value or "png").strip().lower()
    if normalized == "jpg":
        normalized = "jpeg"
    return normalized if normalized in VALID_OUTPUT_FORMATS else "png"


def _ordinal(index: int) -> str:
    return {0: "first", 1: "second", 2: "third"}.get(index, f"{index + 1}th")


def build_portrait_prompt(job: PortraitJob) -> str:
    background = (
        "on top of an abstract pattern suitable for mindful coloring"
        if job.background == "mindful"
        else "on a plain white background"
    )
    lines: List[str] = []

    if job.page_type == "cartoon_portrait":
        lines.append("Create a cartoon coloring page by following these steps precisely:")
        for index in range(len(job.photos)):
            activity = job.individual_activities[index] if index < len(job.individual_activities) else ""
            lines.append(f"For the {_ordinal(index)} photo:")
            lines.append("1. Turn the face into a line drawing, paying extra care to accurately represent facial features.")
            lines.append("2. Place the result onto a cartoon-style line drawing body, also suitable for a coloring page.")
            if activity.strip():
                lines.append(f"3. Show this cartoon person engaged in {activity.strip()}.")
        if job.scene_description and job.scene_description.strip():
            lines.append(f"Place all characters in the scene: {job.scene_description.strip()}, drawn in a coloring page style.")
        else:
            lines.append("Arrange all the cartoon characters elegantly on the page.")
    else:
        lines.append("Create a coloring page by following these steps precisely:")
        for index in range(len(job.photos)):
            name = job.individual_names[index] if index < len(job.individual_names) else ""
            lines.append(f"For the {_ordinal(index)} photo:")
            lines.append("1. Turn the face into a line drawing, paying extra care to accurately represent facial features.")
            lines.append("2. Place the resulting face inside its own plain white box with a black outline.")
            if name.strip():
                lines.append(
                    f'3. Write "{name.strip()}" using friendly white letters with a black outline, '
                    "suitable for a coloring page, under the box."
                )
        lines.append("Finally, arrange all the created boxes elegantly on the page.")

    lines.append(f"Place the entire composition {background}.")
    if job.name_message and job.name_message.strip():
        lines.append(
            f'Include "{job.name_message.strip()}" written in friendly white letters with a black outline, '
            "suited to a coloring page, positioned unobtrusively."
        )
    return "\n".join(lines)


class ReplicateImageGenerator:
    """Create a Replicate prediction and poll it until it settles."""

    def __init__(
        self,
        token: str,
        model: str,
        api_url: str = "https://api.replicate.com/v1",
        timeout_seconds: float = 300,
        poll_interval_seconds: float = 2.0,
        openai_api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.openai_api_key = openai_api_key
        self._client = client

    @classmethod
    def from_settings(cls) -> "ReplicateImageGenerator":
        return cls(
            token=require_replicate_token(),
            model=settings.REPLICATE_MODEL,
            api_url=settings.REPLICATE_API_URL,
            timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
            poll_interval_seconds=settings.GENERATION_POLL_INTERVAL_SECONDS,
            openai_api_key=settings.OPENAI_API_KEY,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    async def generate(self, prompt: str, images: List[str], output_format: str) -> GeneratedImage:
        if self._client is not None:
            return await self._run(self._client, prompt, images, output_format)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await self._run(client, prompt, images, output_format)

    async def _run(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        images: List[str],
        output_format: str,
    ) -> GeneratedImage:
        payload: Dict[str, Any] = {
            "input": {
                "prompt": prompt,
                "input_images": images,
                "output_format": output_format,
            }
        }
        if self.openai_api_key:
            payload["input"]["openai_api_key"] = self.openai_api_key

        try:
            response = await client.post(
                f"{self.api_url}/models/{self.model}/predictions",
                headers=self._headers(),
                json=payload,
            )
            response.raise_for_status()
            prediction = response.json()
            prediction = await self._poll(client, prediction)
        except httpx.HTTPError as exc:
            raise GenerationFailed(f"Replicate request failed: {exc}") from exc

        output = prediction.get("output")
        url = output[0] if isinstance(output, list) and output else output
        if not url:
            raise GenerationFailed("Replicate prediction returned no output")
        return GeneratedImage(url=str(url), metrics=prediction.get("metrics") or {})

    async def _poll(self, client: httpx.AsyncClient, prediction: Dict[str, Any]) -> Dict[str, Any]:
        deadline = time.monotonic() + float(self.timeout_seconds)
        while True:
            status = prediction.get("status")
            if status == "succeeded":
                return prediction
            if status in {"failed", "canceled"}:
                raise GenerationFailed(f"Replicate prediction {status}: {prediction.get('error') or 'unknown error'}")
            if time.monotonic() >= deadline:
                raise GenerationFailed("Replicate prediction timed out")

            await asyncio.sleep(self.poll_interval_seconds)
            response = await client.get(
                f"{self.api_url}/predictions/{prediction['id']}",
                headers=self._headers(),
            )
            response.raise_for_status()
            prediction = response.json()


def get_image_generator(request: Request) -> ImageGenerator:
    generator = getattr(request.app.state, "generator", None)
    if generator is None:
        try:
            generator = ReplicateImageGenerator.from_settings()
        except ValueError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        request.app.state.generator = generator
    return generator


def credit_cost(job: PortraitJob) -> int:
    if job.is_multi_subject:
        return max(int(settings.CREDIT_COST_MULTI_PORTRAIT), 1)
    return max(int(settings.CREDIT_COST_SINGLE_PORTRAIT), 1)


async def run_billed_generation(
    store: LedgerStore,
    generator: ImageGenerator,
    email: str,
    job: PortraitJob,
) -> Dict[str, Any]:
    """Generate a page for ``email`` and debit it after the provider succeeds.

    A debit failure after a successful generation still returns the image;
    the anomaly is logged and reported as ``billing_warning``.
    """
    cost = credit_cost(job)
    required_tier = SubscriptionTier.STANDARD if job.is_multi_subject else None

    decision = await authorize(store, email, cost, required_tier)
    if not decision.allowed:
        raise GenerationDenied(decision)

    prompt = build_portrait_prompt(job)
    image = await generator.generate(prompt, job.photos, normalize_output_format(job.output_format))

    credits: Dict[str, Any]
    try:
        account = await use_credits(
            store,
            email,
            cost,
            description="Multi-person coloring page" if job.is_multi_subject else "Coloring page generation",
        )
        credits = {"charged": cost, "balance_after": int(account.credits or 0)}
    except Exception as exc:
        detail = exc.to_detail() if isinstance(exc, CreditError) else {"code": "UNKNOWN_ERROR", "message": str(exc)}
        logger.error(
            "Billing anomaly: failed to deduct %s credits from %s after successful generation: %s",
            cost,
            email,
            detail,
        )
        credits = {"charged": 0, "billing_warning": detail}

    return {
        "images": [image.url],
        "usage": image.metrics,
        "credits": credits,
    }
