"""The four-step ad wizard: idea -> audience -> analysis -> gallery.

`WizardStateMachine` holds one visitor's progress in memory, validates
transitions, and schedules debounced saves through `WizardPersistence`.
A failed save never rolls the transition back; the error stays on
`last_save_error` so the caller can show a recoverable notice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from app.middleware.exceptions import (
    AdWizardException,
    InvalidTransitionError,
    RegistrationRequiredError,
)
from app.schemas.wizard import WizardData
from app.services.content_generation import ContentGenerationClient, UsageGate
from app.services.progress import (
    FIRST_STEP,
    LAST_STEP,
    PROGRESS_FIELDS,
    WizardStep,
    clamp_step,
    derive_step,
    has_content,
    parse_wizard_data,
    record_to_data,
)
from app.services.progress_store import ProgressStore
from app.services.session import SessionContext
from app.services.versioned_save import SaveResult, VersionedSaveEngine
from app.utils.debounce import SaveDebouncer

logger = logging.getLogger(__name__)

REGISTRATION_REQUIRED = "registration_required"

STEP_ROUTES = {
    WizardStep.IDEA: "idea",
    WizardStep.AUDIENCE: "audience",
    WizardStep.ANALYSIS: "analysis",
    WizardStep.GALLERY: "gallery",
}


class WizardPersistence:
    """Routes saves by identity.

    Anonymous sessions upsert their usage row by session id; authenticated
    users go through the versioned save engine, and the version returned by
    each save becomes the expected version of the next one.
    """

    def __init__(
        self,
        store: ProgressStore,
        engine: VersionedSaveEngine,
        context: SessionContext,
    ):
        self.store = store
        self.engine = engine
        self.context = context
        self.version = 0
        self.session_closed = False

    async def load(self) -> WizardData:
        if self.context.is_authenticated:
            record = await self.store.get_progress(self.context.user_id)
            if record is None:
                self.version = 0
                return WizardData()
            self.version = record.version
            return record_to_data(record)

        if self.context.session_id:
            usage = await self.store.get_anonymous(self.context.session_id)
            if usage is None:
                return WizardData()
            if usage.migrated_user_id:
                self.session_closed = True
                return WizardData()
            return parse_wizard_data(usage.wizard_data)

        return WizardData()

    async def save(self, data: WizardData) -> SaveResult | None:
        step = clamp_step(data.current_step)

        if self.context.is_authenticated:
            partial: dict[str, Any] = {
                name: getattr(data, name)
                for name in PROGRESS_FIELDS
                if has_content(getattr(data, name))
            }
            partial["current_step"] = step
            result = await self.engine.save(self.context.user_id, partial, self.version)
            self.version = result.new_version
            return result

        if self.context.session_id and not self.session_closed:
            await self.store.save_anonymous(
                self.context.session_id,
                data.model_dump(exclude={"version"}, exclude_none=True),
                last_completed_step=step,
            )
        return None

    async def clear(self) -> None:
        if self.context.is_authenticated:
            record = await self.store.reset_progress(self.context.user_id)
            if record is not None:
                self.version = record.version
        elif self.context.session_id and not self.session_closed:
            await self.store.clear_anonymous(self.context.session_id)


class WizardStateMachine:
    def __init__(
        self,
        persistence: WizardPersistence | None = None,
        data: WizardData | None = None,
        current_step: int = FIRST_STEP,
        debounce_seconds: float = 1.0,
        generator: ContentGenerationClient | None = None,
        usage_gate: UsageGate | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        data = data or WizardData()
        self.persistence = persistence
        self.generator = generator
        self.usage_gate = usage_gate
        self.business_idea = data.business_idea
        self.target_audience = data.target_audience
        self.audience_analysis = data.audience_analysis
        self.generated_ads = data.generated_ads
        self.selected_hooks = data.selected_hooks
        self.current_step = clamp_step(current_step)
        self._debouncer = SaveDebouncer(self._persist, delay=debounce_seconds, sleep=sleep)

    @classmethod
    async def load(cls, persistence: WizardPersistence, **kwargs) -> WizardStateMachine:
        """Rebuild a machine from the stored record.

        Resumes at the stored step when the data still unlocks it, otherwise
        at the derived step.
        """
        data = await persistence.load()
        machine = cls(persistence, data=data, current_step=derive_step(data), **kwargs)
        if data.current_step and machine.can_navigate_to_step(data.current_step):
            machine.current_step = data.current_step
        return machine

    # ── State ───────────────────────────────────────────────

    @property
    def context(self) -> SessionContext:
        return self.persistence.context if self.persistence else SessionContext()

    @property
    def is_authenticated(self) -> bool:
        return self.context.is_authenticated

    @property
    def version(self) -> int:
        return self.persistence.version if self.persistence else 0

    @property
    def data(self) -> WizardData:
        return WizardData(
            business_idea=self.business_idea,
            target_audience=self.target_audience,
            audience_analysis=self.audience_analysis,
            generated_ads=self.generated_ads,
            selected_hooks=self.selected_hooks,
            current_step=self.current_step,
            version=self.version,
        )

    @property
    def requires_registration(self) -> bool:
        return self.current_step == WizardStep.GALLERY and not self.is_authenticated

    @property
    def last_save_error(self) -> AdWizardException | None:
        return self._debouncer.last_error

    @property
    def save_pending(self) -> bool:
        return self._debouncer.pending

    # ── Transitions ─────────────────────────────────────────

    def submit_idea(self, idea: Any) -> None:
        self._require_step(WizardStep.IDEA, "submit an idea")
        if not has_content(idea):
            raise InvalidTransitionError("Business idea must not be empty")
        self.business_idea = idea
        self._advance(WizardStep.AUDIENCE)

    def select_audience(self, audience: Any) -> None:
        self._require_step(WizardStep.AUDIENCE, "select an audience")
        if not has_content(self.business_idea):
            raise InvalidTransitionError("A business idea is required before choosing an audience")
        if not has_content(audience):
            raise InvalidTransitionError("Target audience must not be empty")
        self.target_audience = audience
        self._advance(WizardStep.ANALYSIS)

    async def complete_analysis(self, analysis: Any) -> None:
        """Store the analysis, generate hooks when a generator is configured, open the gallery.

        The trial gate is checked before anything changes.  If generation
        itself fails, the analysis is kept (and saved) but the machine
        stays on the analysis step.
        """
        self._require_step(WizardStep.ANALYSIS, "complete the analysis")
        if not (has_content(self.business_idea) and has_content(self.target_audience)):
            raise InvalidTransitionError("Business idea and target audience are required")
        if not has_content(analysis):
            raise InvalidTransitionError("Audience analysis must not be empty")

        if self.generator is not None and self.usage_gate is not None:
            await self.usage_gate.check(self.context)

        self.audience_analysis = analysis
        self._schedule_save()

        if self.generator is not None:
            self.selected_hooks = await self.generator.generate_hooks(
                self.business_idea,
                self.target_audience,
                audience_analysis=analysis,
                context=self.context,
            )
            if self.usage_gate is not None:
                await self.usage_gate.record(self.context)

        self._advance(WizardStep.GALLERY)

    def record_generated_ads(self, variants: list[dict]) -> None:
        """Keep the gallery's generated variants; only reachable once signed in."""
        if not self.is_authenticated:
            raise RegistrationRequiredError()
        if not self.can_navigate_to_step(WizardStep.GALLERY):
            raise InvalidTransitionError("Complete the audience analysis before generating ads")
        self.generated_ads = variants
        self._advance(WizardStep.GALLERY)

    def back(self) -> None:
        if self.current_step > FIRST_STEP:
            self.current_step -= 1
            self._schedule_save()

    async def start_over(self) -> None:
        """Forget everything, locally and in the backing record."""
        await self.flush()
        for name in PROGRESS_FIELDS:
            setattr(self, name, None)
        self.current_step = FIRST_STEP
        if self.persistence is not None:
            await self.persistence.clear()
        logger.info("Wizard progress cleared for %s", self.context.user_id or self.context.session_id)

    def can_navigate_to_step(self, step: int) -> bool:
        if step == WizardStep.IDEA:
            return True
        if step == WizardStep.AUDIENCE:
            return has_content(self.business_idea)
        if step == WizardStep.ANALYSIS:
            return has_content(self.business_idea) and has_content(self.target_audience)
        if step == WizardStep.GALLERY:
            return (
                has_content(self.business_idea)
                and has_content(self.target_audience)
                and has_content(self.audience_analysis)
            )
        return False

    def navigation(self) -> dict[int, bool]:
        return {step: self.can_navigate_to_step(step) for step in range(FIRST_STEP, LAST_STEP + 1)}

    def route_for_step(self, step: int) -> str:
        if step == WizardStep.GALLERY and not self.is_authenticated:
            return REGISTRATION_REQUIRED
        return STEP_ROUTES[WizardStep(clamp_step(step))]

    def navigate_to(self, step: int) -> None:
        if not self.can_navigate_to_step(step):
            raise InvalidTransitionError(f"Step {step} is not reachable yet")
        if step != self.current_step:
            self.current_step = step
            self._schedule_save()

    async def flush(self) -> AdWizardException | None:
        """Write any pending save now; returns the last save error, if any."""
        if self.persistence is None:
            return None
        return await self._debouncer.flush()

    # ── Internals ───────────────────────────────────────────

    def _require_step(self, step: WizardStep, action: str) -> None:
        if self.current_step != step:
            raise InvalidTransitionError(
                f"Cannot {action} from step {self.current_step}; expected step {int(step)}"
            )

    def _advance(self, step: WizardStep) -> None:
        self.current_step = int(step)
        self._schedule_save()

    def _schedule_save(self) -> None:
        if self.persistence is not None:
            self._debouncer.schedule()

    async def _persist(self) -> SaveResult | None:
        return await self.persistence.save(self.data)
