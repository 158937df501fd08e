"""
Scenario Models

A scenario is the stored, reusable definition of a load test. The
orchestrator only ever reads scenarios; they are created through the
scenarios API and never mutated by a run.
"""

from typing import Optional, Dict, Any, List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _new_scenario_id() -> str:
    return uuid4().hex[:10]


class Scenario(BaseModel):
    """
    Immutable load test definition.

    Concurrency is split across workers; duration and ramp-up are passed to
    every worker unchanged. ``duration_seconds`` is the full wall-clock
    budget of a worker, ramp-up included.
    """

    model_config = ConfigDict(frozen=True)

    scenario_id: str = Field(default_factory=_new_scenario_id, description="Scenario ID")
    name: str = Field(..., min_length=1, description="Display name")
    description: str = Field("", description="Free-form description")

    test_type: str = Field("simple", description="Load tool flavour forwarded to workers")
    test_config: Dict[str, Any] = Field(
        default_factory=dict, description="Raw load tool configuration (opaque)"
    )

    concurrency: int = Field(..., ge=1, description="Desired total virtual users")
    worker_capacity: int = Field(
        ..., ge=1, description="Max concurrent virtual users per worker"
    )
    duration_seconds: int = Field(..., ge=1, description="Test duration (seconds)")
    ramp_up_seconds: int = Field(0, ge=0, description="Ramp-up (seconds)")

    regions: List[str] = Field(..., min_length=1, description="Target regions")
    worker_count: Optional[int] = Field(
        None, ge=1, description="Explicit worker count override"
    )
    image: Optional[str] = Field(None, description="Worker image override")

    @field_validator("regions")
    @classmethod
    def validate_regions(cls, v: List[str]) -> List[str]:
        regions = [str(r).strip() for r in v]
        if any(not r for r in regions):
            raise ValueError("regions must be non-empty strings")
        if len(set(regions)) != len(regions):
            raise ValueError("regions must not contain duplicates")
        return regions

    @model_validator(mode="after")
    def validate_ramp_up(self) -> "Scenario":
        if self.ramp_up_seconds > self.duration_seconds:
            raise ValueError("ramp_up_seconds cannot exceed duration_seconds")
        return self
