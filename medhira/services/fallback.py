"""
Provider fallback policy

Wraps a real provider together with its deterministic substitute. The pair is
chosen once, when the wrapper is built from the settings. A call through the
wrapper never raises for provider availability: a missing credential, an
exception, a timeout or unusable output all produce the fallback result.
Caller precondition violations (an empty transcript) still raise.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from prometheus_client import Counter

from medhira.config import Settings
from medhira.core.exceptions import EmptyTranscriptError, MalformedProviderOutput
from medhira.core.logging import get_logger, audit_logger
from medhira.models.consultation import MedicalSummary
from medhira.services.audio_processor import AudioHandle
from medhira.services.llm_service import (
    CannedSummarizationProvider,
    OpenAISummarizationProvider,
    SummarizationProvider,
    ensure_transcript,
)
from medhira.services.stt_service import (
    AssemblyAITranscriptionProvider,
    CannedTranscriptionProvider,
    TranscriptionProvider,
)

logger = get_logger(__name__)

provider_fallback_total = Counter(
    "provider_fallback_total",
    "Provider calls answered by the deterministic fallback",
    ["provider", "reason"],
)

T = TypeVar("T")

REASON_NOT_CONFIGURED = "not_configured"
REASON_TIMEOUT = "timeout"
REASON_MALFORMED = "malformed_output"
REASON_ERROR = "error"


@dataclass
class ProviderResult(Generic[T]):
    value: T
    provider: str
    used_fallback: bool = False
    reason: Optional[str] = None


class _FallbackPolicy:
    kind = "provider"

    def __init__(self, primary: Optional[Any], fallback: Any, timeout: Optional[float]):
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout if timeout and timeout > 0 else None

    @property
    def uses_fallback_only(self) -> bool:
        return self.primary is None

    def describe(self) -> dict:
        return {
            "provider": self.primary.name if self.primary else self.fallback.name,
            "fallback": self.fallback.name,
            "configured": self.primary is not None,
        }

    async def _call(
        self,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
        validate: Callable[[Any], T],
    ) -> ProviderResult[T]:
        if self.primary is None:
            return await self._substitute(fallback_call, REASON_NOT_CONFIGURED)

        try:
            if self.timeout:
                value = await asyncio.wait_for(primary_call(), timeout=self.timeout)
            else:
                value = await primary_call()
            value = validate(value)
        except EmptyTranscriptError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"{self.kind} provider '{self.primary.name}' timed out after {self.timeout}s")
            return await self._substitute(fallback_call, REASON_TIMEOUT, f"timed out after {self.timeout}s")
        except MalformedProviderOutput as e:
            logger.warning(f"{self.kind} provider '{self.primary.name}' returned unusable output: {e}")
            return await self._substitute(fallback_call, REASON_MALFORMED, str(e))
        except Exception as e:
            logger.error(f"{self.kind} provider '{self.primary.name}' failed: {e}", exc_info=True)
            return await self._substitute(fallback_call, REASON_ERROR, str(e))

        return ProviderResult(value=value, provider=self.primary.name)

    async def _substitute(
        self,
        fallback_call: Callable[[], Awaitable[T]],
        reason: str,
        error_message: Optional[str] = None,
    ) -> ProviderResult[T]:
        provider = self.primary.name if self.primary else self.kind
        provider_fallback_total.labels(provider=provider, reason=reason).inc()
        audit_logger.log_provider_fallback(
            provider=provider,
            reason=reason,
            error_message=error_message,
            fallback=self.fallback.name,
        )
        value = await fallback_call()
        return ProviderResult(value=value, provider=self.fallback.name, used_fallback=True, reason=reason)


class FallbackTranscriber(_FallbackPolicy):
    kind = "transcription"

    def __init__(
        self,
        primary: Optional[TranscriptionProvider],
        fallback: TranscriptionProvider,
        timeout: Optional[float] = None,
    ):
        super().__init__(primary, fallback, timeout)

    async def transcribe(self, audio: AudioHandle) -> ProviderResult[str]:
        def validate(text: Any) -> str:
            if not isinstance(text, str) or not text.strip():
                raise MalformedProviderOutput(self.primary.name, "transcript is empty")
            return text

        return await self._call(
            lambda: self.primary.transcribe(audio),
            lambda: self.fallback.transcribe(audio),
            validate,
        )


class FallbackSummarizer(_FallbackPolicy):
    kind = "summarization"

    def __init__(
        self,
        primary: Optional[SummarizationProvider],
        fallback: SummarizationProvider,
        timeout: Optional[float] = None,
    ):
        super().__init__(primary, fallback, timeout)

    async def summarize(self, transcript: str) -> ProviderResult[MedicalSummary]:
        # Precondition, checked before any provider is involved
        transcript = ensure_transcript(transcript)

        def validate(summary: Any) -> MedicalSummary:
            if isinstance(summary, MedicalSummary):
                return summary
            if isinstance(summary, dict):
                try:
                    return MedicalSummary.model_validate(summary)
                except ValueError as e:
                    raise MalformedProviderOutput(self.primary.name, str(e))
            raise MalformedProviderOutput(self.primary.name, f"unexpected summary type {type(summary).__name__}")

        return await self._call(
            lambda: self.primary.summarize(transcript),
            lambda: self.fallback.summarize(transcript),
            validate,
        )


def build_transcriber(settings: Settings) -> FallbackTranscriber:
    fallback = CannedTranscriptionProvider(delay_seconds=settings.fallback_delay_seconds)
    primary = None
    if settings.assemblyai_configured:
        primary = AssemblyAITranscriptionProvider(settings)
    else:
        logger.info("No valid AssemblyAI API key, transcription will use the canned transcript")
    return FallbackTranscriber(primary, fallback, timeout=settings.stt_timeout)


def build_summarizer(settings: Settings) -> FallbackSummarizer:
    fallback = CannedSummarizationProvider(delay_seconds=settings.fallback_delay_seconds / 2)
    primary = None
    if settings.openai_configured:
        primary = OpenAISummarizationProvider(settings)
    else:
        logger.info("No valid OpenAI API key, summarization will use the canned summary")
    return FallbackSummarizer(primary, fallback, timeout=settings.llm_timeout)
