"""Ad wizard: 4-step flow with anonymous progress and sign-in migration.

Endpoints:
  POST /api/wizard/session      → start an anonymous session (sets cookie)
  GET  /api/wizard/             → current state (migrates a pending session first)
  POST /api/wizard/idea         → step 1 → 2
  POST /api/wizard/audience     → step 2 → 3
  POST /api/wizard/analysis     → step 3 → 4 (generates hooks)
  POST /api/wizard/navigate     → jump to an unlocked step
  POST /api/wizard/back         → previous step
  POST /api/wizard/start-over   → clear progress
  PUT  /api/wizard/progress     → versioned save (signed-in users)
  POST /api/wizard/migrate      → merge the anonymous session into the user

Design:
  - Identity comes from the bearer token and/or the anonymous session id
    (cookie or X-Anonymous-Session-Id header).
  - Each request rebuilds a WizardStateMachine from the store, applies
    one transition and flushes its debounced save before responding.
  - A failed save does not fail the request: the new state is returned
    with `save_error` set.
"""

import logging

from fastapi import APIRouter, Depends, Response, status

from app.auth.deps import get_session_context, require_user_id
from app.config import settings
from app.deps import (
    get_content_client,
    get_migration_coordinator,
    get_migration_queue,
    get_save_engine,
    get_store,
    get_usage_gate,
)
from app.middleware.exceptions import (
    AdWizardException,
    AuthenticationRequiredError,
    FatalMigrationError,
)
from app.middleware.rate_limit import rate_limited
from app.schemas.wizard import (
    AnalysisComplete,
    AudienceSelect,
    IdeaSubmit,
    MigrationResponse,
    NavigateRequest,
    SaveRequest,
    SaveResponse,
    SessionCreated,
    WizardStateResponse,
)
from app.services.content_generation import ContentGenerationClient, UsageGate
from app.services.migration import (
    MigrationCoordinator,
    MigrationQueue,
    MigrationResult,
    MigrationStatus,
)
from app.services.progress_store import SqlProgressStore
from app.services.session import SessionContext, start_anonymous_session
from app.services.versioned_save import VersionedSaveEngine
from app.services.wizard_state import WizardPersistence, WizardStateMachine

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


# ── Helpers ──────────────────────────────────────────────────

def _set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        settings.anonymous_session_cookie,
        session_id,
        max_age=SESSION_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.environment == "production",
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.anonymous_session_cookie)


def _error_payload(error: AdWizardException | None) -> dict | None:
    if error is None:
        return None
    payload = {"code": error.error_code, "message": error.message}
    if error.details:
        payload["details"] = error.details
    return payload


def _state_response(
    machine: WizardStateMachine,
    migration_status: str | None = None,
) -> WizardStateResponse:
    return WizardStateResponse(
        current_step=machine.current_step,
        data=machine.data,
        version=machine.version,
        is_authenticated=machine.is_authenticated,
        requires_registration=machine.requires_registration,
        navigation=machine.navigation(),
        route=machine.route_for_step(machine.current_step),
        save_error=_error_payload(machine.last_save_error),
        migration_status=migration_status,
    )


async def _load_machine(
    context: SessionContext,
    store: SqlProgressStore,
    engine: VersionedSaveEngine,
    generator: ContentGenerationClient | None = None,
    usage_gate: UsageGate | None = None,
) -> WizardStateMachine:
    if not context.is_authenticated and not context.session_id:
        raise AuthenticationRequiredError("Start an anonymous session or sign in first")
    return await WizardStateMachine.load(
        WizardPersistence(store, engine, context),
        debounce_seconds=settings.save_debounce_seconds,
        generator=generator,
        usage_gate=usage_gate,
    )


def _migration_response(result: MigrationResult) -> MigrationResponse:
    record = result.record
    return MigrationResponse(
        status=result.status.value,
        current_step=record.current_step if record else None,
        version=record.version if record else None,
        attempts=result.attempts,
        session_cleared=result.session_cleared,
    )


# ── Session ──────────────────────────────────────────────────

@router.post(
    "/session",
    response_model=SessionCreated,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited("session", settings.session_rate_limit, settings.session_rate_window))],
)
async def create_session(
    response: Response,
    store: SqlProgressStore = Depends(get_store),
):
    session_id = await start_anonymous_session(store)
    _set_session_cookie(response, session_id)
    return SessionCreated(session_id=session_id)


# ── State ────────────────────────────────────────────────────

@router.get("/", response_model=WizardStateResponse)
async def get_state(
    response: Response,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
    coordinator: MigrationCoordinator = Depends(get_migration_coordinator),
    queue: MigrationQueue = Depends(get_migration_queue),
):
    """Load the wizard.  A signed-in user still holding a session is migrated first."""
    migration_status = None
    if context.needs_migration:
        try:
            result = await queue.migrate(coordinator, context)
            migration_status = result.status.value
            if result.session_cleared:
                _clear_session_cookie(response)
            context = result.context
        except FatalMigrationError as exc:
            logger.error("Migration on load failed for %s: %s", context.user_id, exc.message)
            migration_status = "failed"

    machine = await _load_machine(context, store, engine)
    return _state_response(machine, migration_status)


# ── Transitions ──────────────────────────────────────────────

@router.post("/idea", response_model=WizardStateResponse)
async def submit_idea(
    body: IdeaSubmit,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    machine = await _load_machine(context, store, engine)
    machine.submit_idea(body.idea)
    await machine.flush()
    return _state_response(machine)


@router.post("/audience", response_model=WizardStateResponse)
async def select_audience(
    body: AudienceSelect,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    machine = await _load_machine(context, store, engine)
    machine.select_audience(body.audience)
    await machine.flush()
    return _state_response(machine)


@router.post(
    "/analysis",
    response_model=WizardStateResponse,
    dependencies=[Depends(rate_limited("generation", settings.generation_rate_limit, settings.generation_rate_window))],
)
async def complete_analysis(
    body: AnalysisComplete,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
    generator: ContentGenerationClient | None = Depends(get_content_client),
    usage_gate: UsageGate = Depends(get_usage_gate),
):
    """Store the analysis and generate hooks.  Anonymous visitors use their one trial here."""
    machine = await _load_machine(context, store, engine, generator, usage_gate)
    try:
        await machine.complete_analysis(body.analysis)
    finally:
        await machine.flush()
    return _state_response(machine)


@router.post("/navigate", response_model=WizardStateResponse)
async def navigate(
    body: NavigateRequest,
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    machine = await _load_machine(context, store, engine)
    machine.navigate_to(body.step)
    await machine.flush()
    return _state_response(machine)


@router.post("/back", response_model=WizardStateResponse)
async def go_back(
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    machine = await _load_machine(context, store, engine)
    machine.back()
    await machine.flush()
    return _state_response(machine)


@router.post("/start-over", response_model=WizardStateResponse)
async def start_over(
    context: SessionContext = Depends(get_session_context),
    store: SqlProgressStore = Depends(get_store),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    machine = await _load_machine(context, store, engine)
    await machine.start_over()
    return _state_response(machine)


# ── Versioned save ───────────────────────────────────────────

@router.put("/progress", response_model=SaveResponse)
async def save_progress(
    body: SaveRequest,
    user_id: str = Depends(require_user_id),
    engine: VersionedSaveEngine = Depends(get_save_engine),
):
    """Write partial data against `expected_version`; 409 once retries run out."""
    result = await engine.save(user_id, body.data, body.expected_version)
    return SaveResponse(
        success=result.success,
        new_version=result.new_version,
        attempts=result.attempts,
    )


# ── Migration ────────────────────────────────────────────────

@router.post("/migrate", response_model=MigrationResponse)
async def migrate(
    response: Response,
    context: SessionContext = Depends(get_session_context),
    user_id: str = Depends(require_user_id),
    coordinator: MigrationCoordinator = Depends(get_migration_coordinator),
    queue: MigrationQueue = Depends(get_migration_queue),
):
    """Merge the presented anonymous session into the signed-in user (at most once)."""
    result = await queue.migrate(coordinator, context)
    if result.session_cleared and result.status != MigrationStatus.NO_SESSION:
        _clear_session_cookie(response)
    logger.info(
        "Migration for user %s finished: %s", user_id, result.status.value,
        extra={"attempts": result.attempts},
    )
    return _migration_response(result)
