"""Gallery step: generate complete ads for a platform.

Endpoints:
  POST /api/generate/ads  → generate variants, store them on the user's progress

Only signed-in users reach the gallery.  Generation for one user runs
under the `ad_generation` lock so two tabs cannot spend credits twice.
"""

import logging

from fastapi import APIRouter, Depends

from app.auth.deps import get_session_context
from app.config import settings
from app.deps import get_content_client, get_lock_manager, get_save_engine, get_store
from app.middleware.exceptions import (
    ContentGenerationError,
    InvalidTransitionError,
    RegistrationRequiredError,
)
from app.middleware.rate_limit import rate_limited
from app.schemas.generation import GenerateAdsRequest, GenerateAdsResponse
from app.services.content_generation import ContentGenerationClient
from app.services.progress import WizardStep
from app.services.progress_store import SqlProgressStore
from app.services.session import SessionContext
from app.services.versioned_save import VersionedSaveEngine
from app.services.wizard_state import WizardPersistence, WizardStateMachine
from app.utils.locks import AD_GENERATION_LOCK, SqlLockManager, run_atomically

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/ads",
    response_model=GenerateAdsResponse,
    dependencies=[Depends(rate_limited("generation", settings.generation_rate_limit, settings.generation_rate_window))],
)
async def generate_ads(
    body: GenerateAdsRequest,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
    locks: SqlLockManager = Depends(get_lock_manager),
    generator: ContentGenerationClient | None = Depends(get_content_client),
):
    if not context.is_authenticated:
        raise RegistrationRequiredError()
    if generator is None:
        raise ContentGenerationError("Content generation is not configured")

    user_id = context.user_id
    machine = await WizardStateMachine.load(
        WizardPersistence(store, engine, context.without_session()),
        debounce_seconds=settings.save_debounce_seconds,
    )
    if not machine.can_navigate_to_step(WizardStep.GALLERY):
        raise InvalidTransitionError("Complete the audience analysis before generating ads")

    async def _generate() -> list[dict]:
        variants = await generator.generate_ads(
            machine.business_idea,
            machine.target_audience,
            audience_analysis=machine.audience_analysis,
            hooks=machine.selected_hooks,
            platform=body.platform,
            context=context,
        )
        machine.record_generated_ads(variants)
        await machine.flush()
        return variants

    variants = await run_atomically(
        locks,
        user_id,
        AD_GENERATION_LOCK,
        _generate,
        ttl=settings.atomic_lock_ttl_seconds,
    )
    logger.info("Generated %d %s ads for %s", len(variants), body.platform, user_id)

    error = machine.last_save_error
    return GenerateAdsResponse(
        platform=body.platform,
        variants=variants,
        count=len(variants),
        version=machine.version,
        save_error={"code": error.error_code, "message": error.message} if error else None,
    )
