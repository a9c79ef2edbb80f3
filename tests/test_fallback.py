import asyncio

import pytest

from medhira.config import settings
from medhira.core.exceptions import EmptyTranscriptError, MalformedProviderOutput
from medhira.models.consultation import MedicalSummary
from medhira.services.fallback import (
    REASON_ERROR,
    REASON_MALFORMED,
    REASON_NOT_CONFIGURED,
    REASON_TIMEOUT,
    FallbackSummarizer,
    FallbackTranscriber,
    build_summarizer,
    build_transcriber,
)
from medhira.services.llm_service import FALLBACK_SUMMARY, CannedSummarizationProvider, SummarizationProvider
from medhira.services.stt_service import FALLBACK_TRANSCRIPT, CannedTranscriptionProvider, TranscriptionProvider


class _StaticTranscriber(TranscriptionProvider):
    name = "static"

    def __init__(self, text):
        self.text = text

    async def transcribe(self, audio):
        return self.text


class _BrokenTranscriber(TranscriptionProvider):
    name = "broken"

    async def transcribe(self, audio):
        raise RuntimeError("connection reset")


class _SlowTranscriber(TranscriptionProvider):
    name = "slow"

    async def transcribe(self, audio):
        await asyncio.sleep(5)
        return "too late"


class _MalformedSummarizer(SummarizationProvider):
    name = "malformed"

    async def summarize(self, transcript):
        raise MalformedProviderOutput(self.name, "response contains no JSON object")


class _DictSummarizer(SummarizationProvider):
    name = "dict"

    async def summarize(self, transcript):
        return {"patientName": "Lena", "diagnosis": "Sinusitis"}


def _transcriber(primary, timeout=None):
    return FallbackTranscriber(primary, CannedTranscriptionProvider(delay_seconds=0), timeout=timeout)


def _summarizer(primary):
    return FallbackSummarizer(primary, CannedSummarizationProvider(delay_seconds=0))


def test_unconfigured_providers_fall_back_from_settings():
    transcriber = build_transcriber(settings)
    summarizer = build_summarizer(settings)

    assert transcriber.uses_fallback_only
    assert summarizer.uses_fallback_only
    assert transcriber.describe() == {"provider": "canned", "fallback": "canned", "configured": False}

    result = asyncio.run(transcriber.transcribe(None))
    assert result.value == FALLBACK_TRANSCRIPT
    assert result.used_fallback is True
    assert result.reason == REASON_NOT_CONFIGURED


def test_primary_result_is_used_when_valid():
    result = asyncio.run(_transcriber(_StaticTranscriber("PATIENT: my knee hurts")).transcribe(None))

    assert result.value == "PATIENT: my knee hurts"
    assert result.provider == "static"
    assert result.used_fallback is False


def test_provider_exception_falls_back():
    result = asyncio.run(_transcriber(_BrokenTranscriber()).transcribe(None))

    assert result.value == FALLBACK_TRANSCRIPT
    assert result.reason == REASON_ERROR


def test_empty_transcript_from_provider_is_malformed():
    result = asyncio.run(_transcriber(_StaticTranscriber("   ")).transcribe(None))

    assert result.value == FALLBACK_TRANSCRIPT
    assert result.reason == REASON_MALFORMED


def test_provider_timeout_falls_back():
    result = asyncio.run(_transcriber(_SlowTranscriber(), timeout=0.05).transcribe(None))

    assert result.value == FALLBACK_TRANSCRIPT
    assert result.reason == REASON_TIMEOUT


def test_malformed_summary_falls_back_to_canned_summary():
    result = asyncio.run(_summarizer(_MalformedSummarizer()).summarize("DOCTOR: hello"))

    assert result.value == FALLBACK_SUMMARY
    assert result.reason == REASON_MALFORMED


def test_dict_summary_is_validated_into_a_record():
    result = asyncio.run(_summarizer(_DictSummarizer()).summarize("DOCTOR: hello"))

    assert isinstance(result.value, MedicalSummary)
    assert result.value.patient_name == "Lena"
    assert result.used_fallback is False


@pytest.mark.parametrize("transcript", ["", "   ", None])
def test_empty_transcript_is_rejected_even_with_fallback(transcript):
    with pytest.raises(EmptyTranscriptError):
        asyncio.run(_summarizer(None).summarize(transcript))
