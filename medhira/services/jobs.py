"""
Background job runner for the audio pipeline
"""

import asyncio
from typing import Optional, Set

from medhira.core.logging import get_logger
from medhira.models.consultation import ConsultationStatus
from medhira.models.responses import JobAcknowledgement
from medhira.services.audio_processor import AudioHandle
from medhira.services.pipeline import AudioProcessingPipeline

logger = get_logger(__name__)


class BackgroundJobRunner:
    """
    Runs one pipeline execution per submitted upload as an asyncio task.
    Progress is only observable through the consultation record.
    """

    def __init__(
        self,
        pipeline: AudioProcessingPipeline,
        max_concurrency: int = 0,
        job_timeout: Optional[float] = None,
    ):
        self.pipeline = pipeline
        self.job_timeout = job_timeout if job_timeout and job_timeout > 0 else None
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def submit(self, consultation_id: str, audio: AudioHandle) -> JobAcknowledgement:
        """Starts processing without waiting for it; must be called from a running event loop."""
        task = asyncio.create_task(self._run(consultation_id, audio), name=f"consultation-{consultation_id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(consultation_id, t))
        logger.info(f"Queued background processing for consultation {consultation_id}")
        return JobAcknowledgement(
            consultation_id=consultation_id,
            status=ConsultationStatus.UPLOADED,
            message="Audio uploaded successfully. Processing started...",
        )

    async def _run(self, consultation_id: str, audio: AudioHandle) -> None:
        if self._semaphore is None:
            await self._execute(consultation_id, audio)
            return
        async with self._semaphore:
            await self._execute(consultation_id, audio)

    async def _execute(self, consultation_id: str, audio: AudioHandle) -> None:
        try:
            if self.job_timeout:
                await asyncio.wait_for(self.pipeline.process(consultation_id, audio), timeout=self.job_timeout)
            else:
                await self.pipeline.process(consultation_id, audio)
        except asyncio.TimeoutError:
            logger.error(f"Processing of consultation {consultation_id} timed out after {self.job_timeout}s")
            await self.pipeline.fail(consultation_id, "Processing timed out")
        except asyncio.CancelledError:
            await self.pipeline.fail(consultation_id, "Processing was interrupted")
            raise
        finally:
            # A run rejected before it started still owns its upload
            audio.delete()

    def _on_done(self, consultation_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background processing for consultation {consultation_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background processing for consultation {consultation_id} raised: {exc}",
                exc_info=exc,
            )

    async def join(self) -> None:
        """Waits until every submitted job has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancels in-flight jobs, used on application shutdown."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Background job runner stopped ({len(tasks)} jobs cancelled)")
