"""
Strukturiertes Logging Setup für Medhira
"""

import logging
import structlog
from datetime import datetime, timezone
from typing import Optional
from medhira.config import settings


def setup_logging():
    """Konfiguriert strukturiertes Logging"""

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    processors = [
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.environment == "development":
        # Development: Colored console output, the renderer formats exc_info itself
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True)
        ])
    else:
        # Production: JSON output
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None):
    """Erstellt einen konfigurierten Logger"""
    return structlog.get_logger(name or __name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLogger:
    """Spezieller Logger für Audit-Events"""

    def __init__(self):
        self.logger = get_logger("audit")

    @property
    def enabled(self) -> bool:
        return settings.audit_log_enabled

    def log_api_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        subject: Optional[str] = None,
        ip_address: Optional[str] = None,
        **kwargs
    ):
        """Loggt API-Anfragen für Audit-Zwecke"""
        if not self.enabled:
            return
        self.logger.info(
            "api_request",
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            subject=subject,
            ip_address=ip_address,
            timestamp=_now(),
            **kwargs
        )

    def log_audio_processing(
        self,
        consultation_id: str,
        status: str,
        audio_size_bytes: int,
        audio_duration: Optional[float],
        processing_time_ms: int,
        used_fallback: bool,
        **kwargs
    ):
        """Loggt Audio-Verarbeitungsevents"""
        if not self.enabled:
            return
        self.logger.info(
            "audio_processing",
            consultation_id=consultation_id,
            status=status,
            audio_size_bytes=audio_size_bytes,
            audio_duration=audio_duration,
            processing_time_ms=processing_time_ms,
            used_fallback=used_fallback,
            timestamp=_now(),
            **kwargs
        )

    def log_provider_fallback(
        self,
        provider: str,
        reason: str,
        error_message: Optional[str] = None,
        **kwargs
    ):
        """Loggt den Wechsel auf eine Fallback-Implementierung"""
        if not self.enabled:
            return
        self.logger.warning(
            "provider_fallback",
            provider=provider,
            reason=reason,
            error_message=error_message,
            timestamp=_now(),
            **kwargs
        )

    def log_consultation_access(
        self,
        consultation_id: str,
        owner_id: str,
        action: str,
        **kwargs
    ):
        """Loggt Zugriffe auf Konsultationen"""
        if not self.enabled:
            return
        self.logger.info(
            "consultation_access",
            consultation_id=consultation_id,
            owner_id=owner_id,
            action=action,
            timestamp=_now(),
            **kwargs
        )

    def log_error(
        self,
        request_id: str,
        error_type: str,
        error_message: str,
        stack_trace: Optional[str] = None,
        **kwargs
    ):
        """Loggt Fehler-Events"""
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=_now(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger()
