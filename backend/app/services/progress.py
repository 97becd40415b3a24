"""Step derivation and merge rules shared by the wizard and migration.

Both record kinds (anonymous usage and user progress) are reduced to
`WizardData` before any of these functions look at them, so the same
rules apply regardless of where the data came from.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.middleware.exceptions import WizardValidationError
from app.schemas.wizard import WizardData

FIRST_STEP = 1
LAST_STEP = 4

# Payload fields, in step order
PROGRESS_FIELDS = (
    "business_idea",
    "target_audience",
    "audience_analysis",
    "generated_ads",
    "selected_hooks",
)


class WizardStep(enum.IntEnum):
    IDEA = 1
    AUDIENCE = 2
    ANALYSIS = 3
    GALLERY = 4


def has_content(value: Any) -> bool:
    """Presence check for opaque payloads: None, blank strings and empty containers are absent."""
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict):
        return any(has_content(v) for v in value.values())
    return bool(value)


def clamp_step(step: int | None) -> int:
    if not step:
        return FIRST_STEP
    return max(FIRST_STEP, min(LAST_STEP, int(step)))


def derive_step(data: WizardData) -> int:
    """Highest step reachable from the populated fields.

    Each check can only raise the result, so adding a field never lowers
    the step.
    """
    step = FIRST_STEP
    if has_content(data.business_idea):
        step = max(step, WizardStep.AUDIENCE)
    if has_content(data.target_audience):
        step = max(step, WizardStep.ANALYSIS)
    if (
        has_content(data.audience_analysis)
        or has_content(data.selected_hooks)
        or has_content(data.generated_ads)
    ):
        step = max(step, WizardStep.GALLERY)
    return int(step)


def is_empty(data: WizardData) -> bool:
    return not any(has_content(getattr(data, f)) for f in PROGRESS_FIELDS)


def parse_wizard_data(raw: Any) -> WizardData:
    """Validate an incoming payload, raising the wizard taxonomy error on bad shape."""
    if isinstance(raw, WizardData):
        return raw
    if raw is None:
        return WizardData()
    try:
        return WizardData.model_validate(raw)
    except ValidationError as exc:
        raise WizardValidationError(
            "Malformed wizard data",
            errors=[
                {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                for e in exc.errors()
            ],
        ) from exc


def record_to_data(record: Any) -> WizardData:
    """Build WizardData from a WizardProgress row (or anything with the same attributes)."""
    if record is None:
        return WizardData()
    return WizardData(
        business_idea=record.business_idea,
        target_audience=record.target_audience,
        audience_analysis=record.audience_analysis,
        generated_ads=record.generated_ads,
        selected_hooks=record.selected_hooks,
        current_step=clamp_step(record.current_step),
        version=record.version,
    )


def payload_fields(data: WizardData, include_empty: bool = False) -> dict:
    """Payload fields as a plain dict.

    By default only the fields that were explicitly provided are returned,
    which is what partial saves need.
    """
    if include_empty:
        return {f: getattr(data, f) for f in PROGRESS_FIELDS}
    provided = data.model_dump(exclude_unset=True)
    return {f: provided[f] for f in PROGRESS_FIELDS if f in provided}


# ── Merge ───────────────────────────────────────────────────

@dataclass
class MergePlan:
    fields: dict
    current_step: int
    calculated_step: int


def calculated_anonymous_step(anonymous: WizardData, last_completed_step: int | None) -> int:
    return clamp_step(max(derive_step(anonymous), last_completed_step or FIRST_STEP))


def merge_progress(
    anonymous: WizardData,
    existing: WizardData | None,
    calculated_step: int,
) -> MergePlan:
    """Merge anonymous progress into a user's existing progress.

    Authenticated values that are present win field by field; anonymous
    values only fill gaps.  The resulting step is the maximum of both
    sources, so migrating never moves a user backwards.
    """
    existing = existing or WizardData()
    fields = {}
    for name in PROGRESS_FIELDS:
        current = getattr(existing, name)
        incoming = getattr(anonymous, name)
        fields[name] = current if has_content(current) else (incoming if has_content(incoming) else current)

    merged = WizardData(**fields)
    step = max(
        calculated_step,
        derive_step(existing),
        clamp_step(existing.current_step),
        derive_step(merged),
    )
    return MergePlan(fields=fields, current_step=clamp_step(step), calculated_step=calculated_step)
