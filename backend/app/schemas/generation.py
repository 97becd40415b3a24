"""Schemas for the gallery (ad generation) endpoint."""

from pydantic import BaseModel


class GenerateAdsRequest(BaseModel):
    platform: str = "facebook"


class GenerateAdsResponse(BaseModel):
    platform: str
    variants: list[dict]
    count: int
    version: int
    save_error: dict | None = None
