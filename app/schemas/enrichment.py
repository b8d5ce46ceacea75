"""Pydantic schemas for the LLM enrichment output shape."""

from typing import Literal

from pydantic import BaseModel, Field


class RiskContext(BaseModel):
    """Risk context attached to a finding under metadata["risk_context"]."""

    public_facing: bool | None = Field(
        default=None,
        description="Whether the affected code is reachable from outside (HTTP handler, public API).",
    )
    auth_required: bool | None = Field(
        default=None,
        description="Whether exploitation requires an authenticated session.",
    )
    exploit_likelihood: Literal["high", "medium", "low"] | None = Field(
        default=None,
        description="Model's estimate of how likely exploitation is in practice.",
    )
    framework: str | None = Field(
        default=None,
        description="Web/application framework the finding sits in, if recognisable.",
    )


class FindingContext(RiskContext):
    """One entry of the model output, keyed by the vulnerability id it describes."""

    id: str = Field(..., min_length=1)


class EnrichmentResponse(BaseModel):
    """Structured response expected from the model."""

    findings: list[FindingContext] = Field(
        ...,
        description="One entry per finding sent to the model.",
    )
