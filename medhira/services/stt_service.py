"""
Speech-to-Text Service
Uses AssemblyAI for transcription, with a canned transcript for environments without credentials.
"""

import asyncio
import io

import assemblyai as aai
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from medhira.config import Settings
from medhira.core.exceptions import ProviderError
from medhira.core.logging import get_logger
from medhira.services.audio_processor import AudioHandle

logger = get_logger(__name__)

# Retry only network issues; service-side rejections go straight to the fallback policy
RETRYABLE_EXCEPTIONS = (httpx.TimeoutException, httpx.NetworkError)

FALLBACK_TRANSCRIPT = """DOCTOR: Good morning, how are you feeling today?
PATIENT: Not too bad, doctor. Still having some headaches though.
DOCTOR: On a scale of 1-10, how severe is the pain?
PATIENT: About a 6 or 7. It's been persistent.
DOCTOR: Any other symptoms? Nausea, vision changes?
PATIENT: Some occasional dizziness, but no vision problems.
DOCTOR: Let me check your blood pressure. 130/85, that's normal. Any family history of migraines?
PATIENT: Yes, my mother used to get migraines.
DOCTOR: Based on your symptoms and family history, this appears to be tension headaches. I recommend ibuprofen as needed and stress management techniques.
PATIENT: Thank you, doctor.
DOCTOR: Follow up in 2 weeks if the symptoms persist."""


class TranscriptionProvider:
    """Converts one audio file into plain text."""

    name = "transcription"

    async def transcribe(self, audio: AudioHandle) -> str:
        raise NotImplementedError


class CannedTranscriptionProvider(TranscriptionProvider):
    """Deterministic transcript returned after a simulated delay."""

    name = "canned"

    def __init__(self, delay_seconds: float = 2.0):
        self.delay_seconds = delay_seconds

    async def transcribe(self, audio: AudioHandle) -> str:
        logger.info("Using canned transcription")
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return FALLBACK_TRANSCRIPT


class AssemblyAITranscriptionProvider(TranscriptionProvider):
    """Service for Speech-to-Text transcription using AssemblyAI."""

    name = "assemblyai"

    def __init__(self, settings: Settings):
        if not settings.assemblyai_configured:
            raise ValueError("AssemblyAI API key is not configured.")
        aai.settings.api_key = settings.assemblyai_api_key
        aai.settings.base_url = settings.assemblyai_api_base_url
        self.language = settings.stt_language
        self.speech_model = aai.SpeechModel(settings.stt_speech_model.value)
        logger.info(
            f"Configured AssemblyAI client ({settings.assemblyai_api_base_url}, "
            f"language={self.language}, speech_model={self.speech_model.value})"
        )

    def _build_transcriber(self) -> aai.Transcriber:
        config = aai.TranscriptionConfig(
            language_code=self.language,
            speech_model=self.speech_model,
            punctuate=True,
            format_text=True,
        )
        return aai.Transcriber(config=config)

    @retry(
        wait=wait_exponential(multiplier=1, min=2, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(f"Retrying AssemblyAI API call, attempt {retry_state.attempt_number}..."),
    )
    async def transcribe(self, audio: AudioHandle) -> str:
        """
        Transcribes audio using AssemblyAI and returns the plain text.
        The provider-side transcript is deleted once the text has been retrieved.
        """
        logger.info(f"Starting transcription with AssemblyAI for file: {audio.stored_name}")
        transcriber = self._build_transcriber()

        # The SDK call blocks until the transcript is ready
        transcript = await asyncio.to_thread(transcriber.transcribe, io.BytesIO(audio.read()))

        if transcript.status == aai.TranscriptStatus.error:
            raise ProviderError(self.name, f"transcription failed: {transcript.error}")

        text = (transcript.text or "").strip()
        logger.info(f"AssemblyAI transcription successful for ID {transcript.id}: {len(text)} characters")
        await self.delete_transcript(transcript.id)

        if not text:
            raise ProviderError(self.name, "transcription returned no text")
        return text

    async def delete_transcript(self, transcript_id: str):
        """Deletes a transcript from AssemblyAI's servers; failures are only logged."""
        if not transcript_id:
            return
        try:
            await asyncio.to_thread(aai.Transcript.delete_by_id, transcript_id)
            logger.info(f"Deleted AssemblyAI transcript ID: {transcript_id}")
        except Exception as e:
            logger.error(f"Failed to delete AssemblyAI transcript ID {transcript_id}: {e}", exc_info=True)
