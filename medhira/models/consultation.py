"""
Consultation and user records persisted by the repositories
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medhira.core.exceptions import InvalidStatusTransition

NOT_SPECIFIED = "Not specified"

# The nine fields of the structured medical record, in display order
SUMMARY_FIELDS = (
    "patient_name",
    "age",
    "gender",
    "symptoms",
    "history",
    "examination",
    "diagnosis",
    "prescription",
    "follow_up",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ConsultationStatus(str, Enum):
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsultationStatus.COMPLETED, ConsultationStatus.FAILED)

    def can_transition_to(self, target: "ConsultationStatus") -> bool:
        return target in _TRANSITIONS[self]

    def ensure_transition(self, target: "ConsultationStatus") -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.value, target.value)


_TRANSITIONS = {
    ConsultationStatus.UPLOADED: {ConsultationStatus.TRANSCRIBING, ConsultationStatus.FAILED},
    ConsultationStatus.TRANSCRIBING: {
        ConsultationStatus.SUMMARIZING,
        ConsultationStatus.COMPLETED,
        ConsultationStatus.FAILED,
    },
    ConsultationStatus.SUMMARIZING: {ConsultationStatus.COMPLETED, ConsultationStatus.FAILED},
    ConsultationStatus.COMPLETED: set(),
    ConsultationStatus.FAILED: set(),
}


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MedicalSummary(CamelModel):
    """The nine-field structured record extracted from a transcript."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )

    patient_name: Optional[str] = None
    age: Optional[str] = None
    gender: Optional[str] = None
    symptoms: Optional[str] = None
    history: Optional[str] = None
    examination: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    follow_up: Optional[str] = None

    @field_validator(*SUMMARY_FIELDS, mode="before")
    @classmethod
    def _join_lists(cls, value: Any) -> Any:
        # Models often answer list-valued fields, e.g. ["cough", "fever"]
        if isinstance(value, (list, tuple)):
            return ", ".join(str(x).strip() for x in value if x is not None and str(x).strip())
        return value

    def backfilled(self) -> "MedicalSummary":
        """Returns a copy where every blank field reads "Not specified"."""
        return MedicalSummary(**backfill_fields(self.model_dump()))


def backfill_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Coerces blank or missing summary fields in *values* to NOT_SPECIFIED."""
    filled = dict(values)
    for field in SUMMARY_FIELDS:
        value = filled.get(field)
        if value is None or not str(value).strip():
            filled[field] = NOT_SPECIFIED
        else:
            filled[field] = str(value).strip()
    return filled


class Consultation(CamelModel):
    """One audio-to-summary request and its resulting medical content."""

    id: str = Field(default_factory=new_id)
    owner_id: str

    # Source artifact metadata, the bytes themselves are never stored
    original_name: Optional[str] = None
    audio_file: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    audio_duration_seconds: Optional[float] = None

    status: ConsultationStatus = ConsultationStatus.UPLOADED

    patient_name: Optional[str] = None
    age: Optional[str] = None
    gender: Optional[str] = None
    symptoms: Optional[str] = None
    history: Optional[str] = None
    examination: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    follow_up: Optional[str] = None
    transcript: Optional[str] = None

    error: Optional[str] = None

    # Export metadata
    drive_link: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_failed_at: Optional[datetime] = None

    def summary(self) -> MedicalSummary:
        return MedicalSummary(**{field: getattr(self, field) for field in SUMMARY_FIELDS})

    def is_owned_by(self, owner_id: str) -> bool:
        return self.owner_id == owner_id


class User(CamelModel):
    id: str = Field(default_factory=new_id)
    username: str
    email: str
    hashed_password: str
    role: str = "doctor"
    created_at: datetime = Field(default_factory=utcnow)
