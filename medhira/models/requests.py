"""
Pydantic Models for API Requests
"""

from typing import Optional
from pydantic import Field
from medhira.models.consultation import CamelModel


class ConsultationContent(CamelModel):
    """Manually entered or edited summary fields."""
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


class ConsultationCreate(ConsultationContent):
    pass


class ConsultationUpdate(ConsultationContent):
    """Status and processing fields are owned by the pipeline and cannot be edited."""
    drive_link: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None


class RegisterRequest(CamelModel):
    username: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)


class LoginRequest(CamelModel):
    email: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
