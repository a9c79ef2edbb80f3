"""
Pydantic Models für API Responses
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import Field
from medhira.models.consultation import CamelModel, Consultation, ConsultationStatus


class JobAcknowledgement(CamelModel):
    """Antwort auf einen Upload, die Verarbeitung läuft im Hintergrund weiter"""
    success: bool = True
    consultation_id: str = Field(description="ID der angelegten Konsultation")
    status: ConsultationStatus = Field(description="Initialer Verarbeitungsstatus")
    message: str = Field(description="Statusmeldung")


class PartialData(CamelModel):
    transcript: Optional[str] = None


class ProcessingStatusResponse(CamelModel):
    """Verarbeitungsstatus einer Konsultation"""
    success: bool = True
    consultation_id: str
    status: ConsultationStatus
    message: str
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    error: Optional[str] = None
    partial_data: Optional[PartialData] = None
    consultation: Optional[Consultation] = None


class ConsultationListItem(CamelModel):
    """Kurzfassung für Listenansichten"""
    id: str
    status: ConsultationStatus
    patient_name: Optional[str] = None
    diagnosis: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConsultationListResponse(CamelModel):
    success: bool = True
    count: int
    consultations: List[Any]


class ConsultationResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None
    consultation_id: Optional[str] = None
    status: Optional[ConsultationStatus] = None
    consultation: Consultation


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class TranscriptionResponse(CamelModel):
    """Antwort des Legacy-Transkriptionsendpunkts"""
    success: bool = True
    text: str
    note: Optional[str] = None


class ExportResponse(CamelModel):
    success: bool = True
    message: str
    drive_link: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None


class UserPublic(CamelModel):
    id: str
    username: str
    email: str
    role: str


class AuthResponse(CamelModel):
    success: bool = True
    message: str
    token: str
    user: UserPublic


class HealthCheckResponse(CamelModel):
    """Health Check Response"""
    status: str = Field(description="Service Status (healthy/unhealthy)")
    timestamp: datetime = Field(description="Check-Zeitpunkt")
    version: str = Field(description="Service-Version")
    uptime_seconds: int = Field(description="Uptime in Sekunden")
    details: Optional[Dict[str, Any]] = Field(default=None)


class ErrorResponse(CamelModel):
    """Standardisierte Fehlerantwort"""
    success: bool = False
    message: str = Field(description="Fehlerbeschreibung")
    request_id: Optional[str] = Field(default=None, description="Request-ID für Debugging")


class RateLimitResponse(CamelModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str = Field(description="Rate Limit Fehlermeldung")
    retry_after: int = Field(description="Sekunden bis zum nächsten Versuch")
    limit: int = Field(description="Request-Limit")
    window: int = Field(description="Zeitfenster in Sekunden")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")
