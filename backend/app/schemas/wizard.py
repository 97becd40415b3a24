"""Pydantic schemas for the 4-step ad wizard.

Step payloads (business idea, audience, analysis, ads, hooks) belong to
the UI layer; the backend only checks their JSON shape and whether they
are present.  Every field is optional so partial saves work.
"""

from pydantic import BaseModel, ConfigDict, Field


# ── Shared unit of progress ─────────────────────────────────

class WizardData(BaseModel):
    """Progress exchanged between anonymous and authenticated records."""

    model_config = ConfigDict(extra="ignore")

    business_idea: dict | None = None
    target_audience: dict | None = None
    audience_analysis: dict | None = None
    generated_ads: list[dict] | None = None
    selected_hooks: list[dict] | None = None
    current_step: int | None = Field(default=None, ge=1, le=4)
    version: int | None = Field(default=None, ge=0)


# ── Step submissions ────────────────────────────────────────

class IdeaSubmit(BaseModel):
    idea: dict


class AudienceSelect(BaseModel):
    audience: dict


class AnalysisComplete(BaseModel):
    analysis: dict


class NavigateRequest(BaseModel):
    step: int = Field(ge=1, le=4)


# ── Versioned save ──────────────────────────────────────────

class SaveRequest(BaseModel):
    data: dict
    expected_version: int = Field(ge=0)


class SaveResponse(BaseModel):
    success: bool
    new_version: int
    attempts: int


# ── State / migration responses ─────────────────────────────

class WizardStateResponse(BaseModel):
    current_step: int
    data: WizardData
    version: int
    is_authenticated: bool
    requires_registration: bool
    navigation: dict[int, bool]
    route: str
    save_error: dict | None = None
    migration_status: str | None = None


class SessionCreated(BaseModel):
    session_id: str


class MigrationResponse(BaseModel):
    status: str
    current_step: int | None = None
    version: int | None = None
    attempts: int = 0
    session_cleared: bool = False
