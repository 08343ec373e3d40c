"""GenerationRequest entity - the unit of work with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from unigen.core.timezone import utcnow
from unigen.services.generation.types import GenerationArtifact


class GenerationStatus(str, Enum):
    """Generation request lifecycle status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset(
    {GenerationStatus.SUCCESS, GenerationStatus.FAILED, GenerationStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.PENDING: frozenset(
        {GenerationStatus.PROCESSING, GenerationStatus.FAILED, GenerationStatus.CANCELLED}
    ),
    GenerationStatus.PROCESSING: frozenset(
        {GenerationStatus.SUCCESS, GenerationStatus.FAILED, GenerationStatus.CANCELLED}
    ),
    GenerationStatus.SUCCESS: frozenset(),
    GenerationStatus.FAILED: frozenset(),
    GenerationStatus.CANCELLED: frozenset(),
}

# Columns a state transition may change; everything else is write-once
TRANSITION_FIELDS = (
    "status",
    "results",
    "error_message",
    "error_kind",
    "provider_task_id",
    "progress",
    "response_payload",
    "duration_ms",
    "updated_at",
    "completed_at",
)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation request state transition."""

    pass


class GenerationRequest(SQLModel, table=True):
    """GenerationRequest tracks one generation from validation to a terminal state.

    Invariants kept by the transition methods:
        - results is set iff status is SUCCESS
        - error_message is set iff status is FAILED
        - terminal statuses never change (only soft deletion remains)
    """

    __tablename__ = "generation_requests"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)

    # Routing snapshot taken at creation time
    provider_id: UUID = Field(foreign_key="providers.id", index=True)
    model_identifier: str = Field(max_length=255, index=True)

    # Input
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    input_images: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    number_of_outputs: int = Field(default=1, ge=1)
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: GenerationStatus = Field(default=GenerationStatus.PENDING, index=True)

    # Output
    results: Optional[list] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_kind: Optional[str] = Field(default=None, max_length=50)

    # Async bookkeeping
    provider_task_id: Optional[str] = Field(default=None, max_length=255, index=True)
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    # Audit
    request_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    response_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    duration_ms: Optional[int] = Field(default=None, ge=0)

    # Ownership
    client_key_hash: Optional[str] = Field(default=None, max_length=64, index=True)
    client_key_prefix: Optional[str] = Field(default=None, max_length=16)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    deleted_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def artifacts(self) -> list[GenerationArtifact]:
        """Typed view of the persisted results."""
        return [GenerationArtifact.model_validate(item) for item in self.results or []]

    def transition_values(self) -> dict[str, Any]:
        """Column values written by a state transition."""
        return {name: getattr(self, name) for name in TRANSITION_FIELDS}

    def _transition(self, target: GenerationStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {target.value}."
            )
        now = utcnow()
        self.status = target
        self.updated_at = now
        if target in TERMINAL_STATUSES:
            self.completed_at = now
            self.duration_ms = max(0, int((now - self.created_at).total_seconds() * 1000))

    def mark_processing(self) -> None:
        """Transition from PENDING to PROCESSING.

        Raises:
            InvalidStateTransition: If current status is not PENDING
        """
        if self.status != GenerationStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. "
                "Request must be in PENDING state."
            )
        self._transition(GenerationStatus.PROCESSING)

    def attach_provider_task(self, provider_task_id: str) -> None:
        """Record the job handle of an asynchronous adapter.

        Raises:
            InvalidStateTransition: If current status is not PROCESSING
            ValueError: If provider_task_id is empty
        """
        if self.status != GenerationStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot attach provider task in {self.status.value}. "
                "Request must be in PROCESSING state."
            )
        if not provider_task_id:
            raise ValueError("provider_task_id is required")
        self.provider_task_id = provider_task_id
        self.progress = 0
        self.updated_at = utcnow()

    def record_progress(self, progress: int) -> None:
        """Store provider-reported progress, clamped to 0-100."""
        if self.status != GenerationStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot record progress in {self.status.value}. "
                "Request must be in PROCESSING state."
            )
        self.progress = max(0, min(100, int(progress)))
        self.updated_at = utcnow()

    def mark_succeeded(
        self,
        artifacts: list[GenerationArtifact],
        response_payload: Optional[dict] = None,
    ) -> None:
        """Transition from PROCESSING to SUCCESS.

        Args:
            artifacts: Final output artifacts (after Result Transfer)
            response_payload: Raw provider response for the audit trail

        Raises:
            InvalidStateTransition: If current status is not PROCESSING
            ValueError: If no artifacts were produced
        """
        if self.status != GenerationStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark succeeded from {self.status.value}. "
                "Request must be in PROCESSING state."
            )
        if not artifacts:
            raise ValueError("at least one artifact is required")
        self._transition(GenerationStatus.SUCCESS)
        self.results = [artifact.model_dump(mode="json") for artifact in artifacts]
        self.error_message = None
        self.error_kind = None
        self.progress = 100
        if response_payload is not None:
            self.response_payload = response_payload

    def mark_failed(
        self,
        error_message: str,
        error_kind: str,
        response_payload: Optional[dict] = None,
    ) -> None:
        """Transition from any non-terminal state to FAILED.

        Args:
            error_message: Human-readable failure description
            error_kind: Classified error kind (ErrorKind value)
            response_payload: Classified error and raw provider detail for diagnostics

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self._transition(GenerationStatus.FAILED)
        self.results = None
        self.error_message = error_message or error_kind
        self.error_kind = error_kind
        if response_payload is not None:
            self.response_payload = response_payload

    def mark_cancelled(self) -> None:
        """Transition from any non-terminal state to CANCELLED.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark cancelled from terminal state {self.status.value}."
            )
        self._transition(GenerationStatus.CANCELLED)
        self.results = None
        self.error_message = None

    def mark_deleted(self) -> None:
        """Soft-delete a terminal request.

        Raises:
            InvalidStateTransition: If current status is not terminal
        """
        if not self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot delete request in {self.status.value}. Request must be terminal."
            )
        if self.deleted_at is None:
            self.deleted_at = utcnow()
