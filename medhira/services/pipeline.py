"""
Audio processing pipeline

uploaded -> transcribing -> completed | failed                  (background sweep)
uploaded -> transcribing -> summarizing -> completed | failed   (step by step)

The temporary audio file is deleted on every exit path of a run it owns.
"""

import time
from typing import Optional, Set

from prometheus_client import Histogram

from medhira.core.exceptions import ConsultationBusyError, ConsultationNotFound, PipelineError
from medhira.core.logging import get_logger, audit_logger
from medhira.models.consultation import (
    Consultation,
    ConsultationStatus,
    MedicalSummary,
    backfill_fields,
    utcnow,
)
from medhira.services.audio_processor import AudioHandle, AudioProcessor
from medhira.services.fallback import FallbackSummarizer, FallbackTranscriber
from medhira.services.repository import ConsultationRepository

logger = get_logger(__name__)

audio_processing_duration = Histogram(
    "audio_processing_duration_seconds",
    "Audio processing duration",
    ["outcome"],
)


class AudioProcessingPipeline:
    """Transcribe, summarize and persist one uploaded consultation recording."""

    def __init__(
        self,
        repository: ConsultationRepository,
        transcriber: FallbackTranscriber,
        summarizer: FallbackSummarizer,
        audio_processor: Optional[AudioProcessor] = None,
    ):
        self.repository = repository
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.audio_processor = audio_processor
        self._in_flight: Set[str] = set()

    def is_processing(self, consultation_id: str) -> bool:
        return consultation_id in self._in_flight

    async def process(self, consultation_id: str, audio: AudioHandle) -> Optional[Consultation]:
        """Background sweep: transcribing straight through to completed."""
        return await self._run(consultation_id, audio, expose_summarizing=False)

    async def process_step_by_step(self, consultation_id: str, audio: AudioHandle) -> Optional[Consultation]:
        """Persists the transcript and an observable 'summarizing' state between the two providers."""
        return await self._run(consultation_id, audio, expose_summarizing=True)

    async def fail(self, consultation_id: str, message: str, partial_transcript: Optional[str] = None) -> Optional[Consultation]:
        """Marks a consultation as failed unless it already reached a terminal state."""
        return await self._mark_failed(consultation_id, message, partial_transcript)

    async def _run(self, consultation_id: str, audio: AudioHandle, expose_summarizing: bool) -> Optional[Consultation]:
        # The running attempt owns the audio, a concurrent caller must not delete it
        if consultation_id in self._in_flight:
            raise ConsultationBusyError(consultation_id)
        self._in_flight.add(consultation_id)

        started = time.monotonic()
        try:
            record = await self.repository.get(consultation_id)
            record.status.ensure_transition(ConsultationStatus.TRANSCRIBING)
            try:
                record = await self.repository.update(
                    consultation_id,
                    {
                        "status": ConsultationStatus.TRANSCRIBING,
                        "processing_started_at": utcnow(),
                    },
                    expected_version=record.version,
                )
            except Exception as e:
                logger.error(f"Could not start processing consultation {consultation_id}: {e}", exc_info=True)
                audio_processing_duration.labels(outcome="failed").observe(time.monotonic() - started)
                return await self._mark_failed(consultation_id, str(e) or type(e).__name__)
            logger.info(f"Starting audio processing for consultation {consultation_id}")

            transcript: Optional[str] = None
            try:
                # The file may have vanished between upload and execution
                if not audio.exists():
                    raise PipelineError(f"Audio file not found: {audio.stored_name}")
                if audio.is_empty():
                    raise PipelineError("Audio file is empty")
                audio_duration = self.audio_processor.extract_duration(audio) if self.audio_processor else None

                transcription = await self.transcriber.transcribe(audio)
                transcript = transcription.value

                if expose_summarizing:
                    record.status.ensure_transition(ConsultationStatus.SUMMARIZING)
                    record = await self.repository.update(
                        consultation_id,
                        {"status": ConsultationStatus.SUMMARIZING, "transcript": transcript},
                        expected_version=record.version,
                    )

                summarization = await self.summarizer.summarize(transcript)
                summary = summarization.value
                if not isinstance(summary, MedicalSummary):
                    raise PipelineError("Invalid summary data received from processing", transcript)

                record.status.ensure_transition(ConsultationStatus.COMPLETED)
                now = utcnow()
                changes = backfill_fields(summary.model_dump())
                changes.update({
                    "transcript": transcript,
                    "status": ConsultationStatus.COMPLETED,
                    "audio_duration_seconds": audio_duration,
                    "processed_at": now,
                    "processing_completed_at": now,
                })
                record = await self.repository.update(consultation_id, changes, expected_version=record.version)
            except Exception as e:
                logger.error(f"Audio processing failed for consultation {consultation_id}: {e}", exc_info=True)
                partial = e.partial_transcript if isinstance(e, PipelineError) and e.partial_transcript else transcript
                audio_processing_duration.labels(outcome="failed").observe(time.monotonic() - started)
                return await self._mark_failed(consultation_id, str(e) or type(e).__name__, partial)

            elapsed = time.monotonic() - started
            audio_processing_duration.labels(outcome="completed").observe(elapsed)
            audit_logger.log_audio_processing(
                consultation_id=consultation_id,
                status=record.status.value,
                audio_size_bytes=audio.size,
                audio_duration=audio_duration,
                processing_time_ms=int(elapsed * 1000),
                used_fallback=transcription.used_fallback or summarization.used_fallback,
                transcription_provider=transcription.provider,
                summarization_provider=summarization.provider,
            )
            logger.info(f"Audio processing completed for consultation {consultation_id}")
            return record
        finally:
            audio.delete()
            self._in_flight.discard(consultation_id)

    async def _mark_failed(
        self,
        consultation_id: str,
        message: str,
        partial_transcript: Optional[str] = None,
    ) -> Optional[Consultation]:
        try:
            record = await self.repository.get(consultation_id)
        except ConsultationNotFound:
            logger.warning(f"Consultation {consultation_id} disappeared before the failure could be recorded")
            return None

        if not record.status.can_transition_to(ConsultationStatus.FAILED):
            logger.warning(
                f"Not marking consultation {consultation_id} failed, it is already {record.status.value}"
            )
            return record

        changes = {
            "status": ConsultationStatus.FAILED,
            "error": message,
            "processing_failed_at": utcnow(),
        }
        if partial_transcript:
            changes["transcript"] = partial_transcript
        try:
            return await self.repository.update(consultation_id, changes)
        except ConsultationNotFound:
            logger.warning(f"Consultation {consultation_id} disappeared before the failure could be recorded")
            return None
