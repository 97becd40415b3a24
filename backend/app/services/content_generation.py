"""Client for the external ad-content generation service.

The service receives the business/audience data and returns creative
variants; we only count and store what comes back.  Credit accounting
lives on the service side: a 402 (or a "no credits" message) is surfaced
as `NoCreditsError` so the client can redirect to billing, while every
other failure becomes `ContentGenerationError`.

Anonymous sessions get one trial generation.  `UsageGate` refuses a
session whose trial is spent and marks the trial consumed after a
successful call.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.middleware.exceptions import (
    ContentGenerationError,
    NoCreditsError,
    TrialCompletedError,
)
from app.services.progress_store import ProgressStore
from app.services.session import SessionContext

logger = logging.getLogger(__name__)

HOOKS = "hooks"
COMPLETE_ADS = "complete_ads"


class ContentGenerationClient:
    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def generate(
        self,
        generation_type: str,
        business_idea: dict,
        target_audience: dict,
        audience_analysis: dict | None = None,
        hooks: list[dict] | None = None,
        platform: str | None = None,
        context: SessionContext | None = None,
    ) -> list[dict]:
        payload: dict[str, Any] = {
            "type": generation_type,
            "businessIdea": business_idea,
            "targetAudience": target_audience,
            "audienceAnalysis": audience_analysis,
            "hooks": hooks,
            "platform": platform,
        }
        if context is not None:
            payload["userId"] = context.user_id
            payload["sessionId"] = context.session_id
            payload["isAnonymous"] = context.is_anonymous
        payload = {k: v for k, v in payload.items() if v is not None}

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Content generation request failed: %s", exc)
            raise ContentGenerationError() from exc

        if response.status_code >= 400:
            self._raise_for_error(response)

        try:
            body = response.json()
        except ValueError as exc:
            raise ContentGenerationError("Content generation returned an invalid response") from exc

        variants = _extract_variants(body)
        logger.info(
            "Generated %d %s variant(s)%s",
            len(variants),
            generation_type,
            f" for {platform}" if platform else "",
        )
        return variants

    async def generate_hooks(
        self,
        business_idea: dict,
        target_audience: dict,
        audience_analysis: dict | None = None,
        context: SessionContext | None = None,
    ) -> list[dict]:
        return await self.generate(
            HOOKS,
            business_idea,
            target_audience,
            audience_analysis=audience_analysis,
            context=context,
        )

    async def generate_ads(
        self,
        business_idea: dict,
        target_audience: dict,
        audience_analysis: dict | None = None,
        hooks: list[dict] | None = None,
        platform: str = "facebook",
        context: SessionContext | None = None,
    ) -> list[dict]:
        return await self.generate(
            COMPLETE_ADS,
            business_idea,
            target_audience,
            audience_analysis=audience_analysis,
            hooks=hooks,
            platform=platform,
            context=context,
        )

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        try:
            message = str(response.json().get("error", ""))
        except (ValueError, AttributeError):
            message = response.text
        lowered = message.lower()

        if response.status_code == 402 or "no credits" in lowered:
            raise NoCreditsError()
        if "trial has been completed" in lowered:
            raise TrialCompletedError()
        logger.error(
            "Content generation error %d: %s", response.status_code, message[:200]
        )
        raise ContentGenerationError()


def _extract_variants(body: Any) -> list[dict]:
    if isinstance(body, dict):
        for key in ("variants", "ads", "hooks"):
            if isinstance(body.get(key), list):
                body = body[key]
                break
    if not isinstance(body, list):
        raise ContentGenerationError("Content generation returned no variants")
    return [item if isinstance(item, dict) else {"text": str(item)} for item in body]


class UsageGate:
    """Single-generation trial for anonymous sessions."""

    def __init__(self, store: ProgressStore):
        self.store = store

    async def check(self, context: SessionContext) -> None:
        if not context.is_anonymous:
            return
        usage = await self.store.get_anonymous(context.session_id)
        if usage is not None and usage.completed:
            raise TrialCompletedError()

    async def record(self, context: SessionContext) -> None:
        if context.is_anonymous:
            await self.store.mark_trial_consumed(context.session_id)
