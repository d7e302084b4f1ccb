"""
Staging job data models.

A StagingJob is one attempt to stage one room image. Its status only moves
forward along the orchestrator's state machine:

    pending -> reserved -> processing -> completed | failed

Terminal jobs are never mutated again.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from magicstage.models.ledger import validate_organization_id


class StagingStyle(str, Enum):
    """Supported interior styles."""

    MODERN = "modern"
    TRADITIONAL = "traditional"
    MINIMALIST = "minimalist"
    LUXURY = "luxury"
    CONTEMPORARY = "contemporary"
    RUSTIC = "rustic"


class FurnitureCount(str, Enum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    FULL = "full"


class BudgetLevel(str, Enum):
    ECONOMY = "economy"
    MID_RANGE = "mid_range"
    LUXURY = "luxury"


class StagingJobStatus(str, Enum):
    """Staging job lifecycle states."""

    PENDING = "pending"
    RESERVED = "reserved"  # credit held, not yet handed to the provider
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StagingJobStatus.COMPLETED, StagingJobStatus.FAILED)


ALLOWED_TRANSITIONS: dict[StagingJobStatus, frozenset[StagingJobStatus]] = {
    StagingJobStatus.PENDING: frozenset({StagingJobStatus.RESERVED, StagingJobStatus.FAILED}),
    StagingJobStatus.RESERVED: frozenset({StagingJobStatus.PROCESSING, StagingJobStatus.FAILED}),
    StagingJobStatus.PROCESSING: frozenset({StagingJobStatus.COMPLETED, StagingJobStatus.FAILED}),
    StagingJobStatus.COMPLETED: frozenset(),
    StagingJobStatus.FAILED: frozenset(),
}

# Jobs in these states hold a credit reservation that is not yet settled
IN_FLIGHT_STATUSES = (StagingJobStatus.RESERVED, StagingJobStatus.PROCESSING)


class InvalidJobTransition(Exception):
    """Raised when a job is moved along an edge the state machine does not have."""

    def __init__(self, job_id: str, current: StagingJobStatus, target: StagingJobStatus):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot transition {current.value} -> {target.value}")


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StagingPreferences(CamelModel):
    """Optional furnishing preferences folded into the provider prompt."""

    colors: list[str] = Field(default_factory=list, max_length=10)
    furniture_count: FurnitureCount | None = Field(default=None)
    budget: BudgetLevel | None = Field(default=None)

    @field_validator("colors")
    @classmethod
    def strip_colors(cls, v: list[str]) -> list[str]:
        return [color.strip() for color in v if color.strip()]


class StagingRequest(CamelModel):
    """Request to stage one room image."""

    organization_id: str
    room_image_ref: str = Field(..., min_length=1, max_length=1024)
    prompt: str = Field(default="", max_length=1000)
    style: StagingStyle = Field(default=StagingStyle.MODERN)
    preferences: StagingPreferences | None = Field(default=None)

    @field_validator("organization_id")
    @classmethod
    def validate_organization(cls, v: str) -> str:
        return validate_organization_id(v)

    @field_validator("room_image_ref")
    @classmethod
    def validate_room_image_ref(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("room_image_ref is required")
        return v

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: str) -> str:
        return v.strip()


class StagingJob(BaseModel):
    """One attempt to stage one room image."""

    job_id: str = Field(default_factory=lambda: f"job_{uuid4().hex}")
    organization_id: str
    room_image_ref: str
    prompt: str = Field(default="")
    style: StagingStyle
    preferences: StagingPreferences | None = Field(default=None)
    status: StagingJobStatus = Field(default=StagingJobStatus.PENDING)
    reservation_id: str | None = Field(default=None)
    staged_image_url: str | None = Field(default=None)
    ai_cost_cents: int | None = Field(default=None, ge=0)
    error_message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = Field(default=None)

    @classmethod
    def from_request(cls, request: StagingRequest) -> "StagingJob":
        return cls(
            organization_id=request.organization_id,
            room_image_ref=request.room_image_ref,
            prompt=request.prompt,
            style=request.style,
            preferences=request.preferences,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, target: StagingJobStatus) -> None:
        """
        Move the job along the state machine.

        Raises:
            InvalidJobTransition: If the edge does not exist (terminal jobs have none)
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransition(self.job_id, self.status, target)

        now = datetime.now(UTC)
        self.status = target
        self.updated_at = now
        if target.is_terminal:
            self.completed_at = now
