"""
LLM Service for structured medical summaries
"""
import asyncio
import json
from typing import Any, Optional

import httpx
from openai import AsyncOpenAI, APIStatusError
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, retry_if_exception

from medhira.config import Settings
from medhira.core.exceptions import EmptyTranscriptError, MalformedProviderOutput, ProviderError
from medhira.core.logging import get_logger
from medhira.models.consultation import MedicalSummary

logger = get_logger(__name__)

retryable_exceptions = (
    httpx.TimeoutException,
)


def is_server_error(exception):
    """Return True if the exception is an OpenAI 5xx error"""
    return isinstance(exception, APIStatusError) and exception.status_code >= 500


SYSTEM_PROMPT = (
    "You are a medical transcription specialist. Extract structured medical information "
    "from doctor-patient conversations and return valid JSON only."
)

MEDICAL_SUMMARY_PROMPT = """
You are a medical assistant analyzing a doctor-patient consultation transcript. Extract key medical information and structure it into a professional medical summary.

TRANSCRIPT:
{transcript}

Please analyze this transcript and return a structured JSON object with the following fields:
- patientName: Extract or infer patient's name if mentioned, otherwise use "Patient"
- age: Extract patient's age if mentioned, otherwise use "Not specified"
- gender: Extract patient's gender if mentioned, otherwise use "Not specified"
- symptoms: Detailed description of patient's symptoms and chief complaint
- history: Relevant medical history mentioned
- examination: Physical examination findings mentioned
- diagnosis: Doctor's diagnosis or assessment
- prescription: Medications or treatments prescribed
- followUp: Follow-up instructions or recommendations

Return ONLY valid JSON, no additional text.
"""

FALLBACK_SUMMARY = MedicalSummary(
    patient_name="John Smith",
    age="45",
    gender="Male",
    symptoms="Persistent headaches, pain level 6-7/10, occasional dizziness",
    history="Family history of migraines (mother)",
    examination="Blood pressure 130/85 - normal",
    diagnosis="Tension headaches",
    prescription="Ibuprofen as needed for pain relief",
    follow_up="Return in 2 weeks if symptoms persist, practice stress management techniques",
)


def ensure_transcript(transcript: Optional[str]) -> str:
    if not transcript or not transcript.strip():
        raise EmptyTranscriptError("Empty transcript provided")
    return transcript.strip()


def extract_json_object(text: str) -> Optional[str]:
    """
    Returns the first balanced top-level {...} block in *text*, or None.
    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find("{", start + 1)
    return None


def parse_summary_response(text: str) -> MedicalSummary:
    """
    Parses the model output strictly first, then leniently by extracting the
    first JSON object from surrounding prose.
    """
    payload: Any = None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        candidate = extract_json_object(text)
        if candidate is None:
            raise MalformedProviderOutput("openai", "response contains no JSON object")
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise MalformedProviderOutput("openai", f"extracted JSON is invalid: {e}")
        logger.info("Extracted JSON from wrapped model response")

    if not isinstance(payload, dict):
        raise MalformedProviderOutput("openai", f"expected a JSON object, got {type(payload).__name__}")
    try:
        return MedicalSummary.model_validate(payload)
    except ValidationError as e:
        raise MalformedProviderOutput("openai", f"summary failed validation: {e}")


class SummarizationProvider:
    """Converts a transcript into the nine-field structured record."""

    name = "summarization"

    async def summarize(self, transcript: str) -> MedicalSummary:
        raise NotImplementedError


class CannedSummarizationProvider(SummarizationProvider):
    """Deterministic summary returned after a simulated delay."""

    name = "canned"

    def __init__(self, delay_seconds: float = 1.0):
        self.delay_seconds = delay_seconds

    async def summarize(self, transcript: str) -> MedicalSummary:
        ensure_transcript(transcript)
        logger.info("Using canned medical summary")
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return FALLBACK_SUMMARY.model_copy()


class OpenAISummarizationProvider(SummarizationProvider):
    """Service for summarizing consultation transcripts with an OpenAI chat model."""

    name = "openai"

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        if client is None:
            if not settings.openai_configured:
                raise ValueError("OpenAI API key is not configured.")
            client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.llm_timeout)
        self.client = client
        self.model = settings.llm_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens

    @retry(
        wait=wait_exponential(multiplier=1, min=2, max=30),
        stop=stop_after_attempt(3),
        retry=(retry_if_exception_type(retryable_exceptions) | retry_if_exception(is_server_error)),
        reraise=True,
    )
    async def _complete(self, transcript: str) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": MEDICAL_SUMMARY_PROMPT.replace("{transcript}", transcript)},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not completion.choices:
            raise ProviderError(self.name, "completion returned no choices")
        return (completion.choices[0].message.content or "").strip()

    async def summarize(self, transcript: str) -> MedicalSummary:
        transcript = ensure_transcript(transcript)
        logger.info(f"Generating medical summary with model: {self.model}")
        summary_text = await self._complete(transcript)
        summary = parse_summary_response(summary_text)
        logger.info("LLM medical summary generated successfully.")
        return summary
