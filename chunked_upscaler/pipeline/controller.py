"""
Job Orchestration

Runs planning -> per-tile dispatch -> stitching -> completion for one job
at a time on a background thread, tracks progress and ETA, and owns
cooperative cancellation.
"""

import time
import threading
import traceback
import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from chunked_upscaler.core.config import settings
from chunked_upscaler.core.exceptions import ProcessingCancelled, ProcessingError
from chunked_upscaler.core.logging import get_logger, LogContext
from chunked_upscaler.core.metrics import (
    track_stage_latency,
    record_tile,
    record_job_started,
    record_job_completion
)
from chunked_upscaler.modules.upscale.models import (
    Job,
    JobPhase,
    ProcessedTile,
    ProgressEvent,
    SourceImage,
    TileRect,
    UpscaleConfig
)
from chunked_upscaler.pipeline.planner import plan_tiles, cut_tile
from chunked_upscaler.pipeline.stitcher import stitch
from chunked_upscaler.pipeline.tile_upscaler import FilterParams, upscale_tile

logger = get_logger(__name__)

ProgressObserver = Callable[[ProgressEvent], None]

# Progress milestones (percent)
PROGRESS_ANALYZED = 5.0
PROGRESS_PLANNED = 10.0
PROGRESS_STITCHING = 85.0
PROGRESS_FINALIZING = 95.0


class JobController:
    """
    Single-active-job upscale orchestrator.

    Usage:
        controller = JobController()
        controller.subscribe(print)
        job = controller.run(source, UpscaleConfig(scale_factor=2))
        assert job.phase == JobPhase.COMPLETED
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        max_tile_retries: Optional[int] = None,
        tile_delay_seconds: Optional[float] = None
    ):
        self.max_workers = max(1, max_workers if max_workers is not None else settings.MAX_TILE_WORKERS)
        self.max_tile_retries = max(
            0, max_tile_retries if max_tile_retries is not None else settings.TILE_MAX_RETRIES
        )
        self.tile_delay_seconds = (
            tile_delay_seconds if tile_delay_seconds is not None else settings.SIMULATED_TILE_DELAY_SECONDS
        )

        self._lock = threading.RLock()
        self._start_lock = threading.Lock()
        self._current: Optional[Job] = None
        self._thread: Optional[threading.Thread] = None
        self._observers: List[ProgressObserver] = []

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def current_job(self) -> Optional[Job]:
        return self._current

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._current
        if job is not None and job.id == job_id:
            return job
        return None

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """Register a progress observer. Returns a callable that unsubscribes it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def start(self, source: SourceImage, config: UpscaleConfig) -> Job:
        """
        Start a new job on a background thread and return it immediately.

        Any job still running is cancelled and joined first.
        """
        with self._start_lock:
            with self._lock:
                previous, previous_thread = self._current, self._thread
                if previous is not None and previous.request_cancel("Superseded by a new job"):
                    logger.info("cancelling_previous_job", previous_job_id=previous.id)

            # Joined outside self._lock: the winding-down job takes it to copy observers
            if previous_thread is not None:
                previous_thread.join()

            job = Job(
                config=config,
                source_width=source.width,
                source_height=source.height,
                filename=source.filename
            )
            thread = threading.Thread(
                target=self._run,
                args=(job, source),
                name=f"upscale-{job.id[:8]}",
                daemon=True
            )
            with self._lock:
                self._current = job
                self._thread = thread
            thread.start()

        return job

    def run(self, source: SourceImage, config: UpscaleConfig, timeout: Optional[float] = None) -> Job:
        """Start a job and block until it reaches a terminal phase."""
        job = self.start(source, config)
        job.wait(timeout)
        return job

    def cancel(self, job: Optional[Job] = None) -> bool:
        """
        Request cooperative cancellation.

        Idempotent: returns False when there is no active job, the job has
        already finished, or cancellation was already requested.
        """
        with self._lock:
            target = job if job is not None else self._current
            if target is None:
                return False
            requested = target.request_cancel()

        if requested:
            logger.info("job_cancel_requested", job_id=target.id, phase=target.phase.value)
        return requested

    def shutdown(self, timeout: Optional[float] = None):
        """Cancel the active job, if any, and wait for its thread."""
        self.cancel()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def _emit(self, job: Job):
        event = job.snapshot()
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception as e:
                logger.warning(
                    "progress_observer_failed",
                    error=str(e),
                    error_type=type(e).__name__
                )

    def _transition(self, job: Job, phase: JobPhase, percent: float):
        job.cancel_token.raise_if_cancelled()
        job.enter_phase(phase, percent)
        logger.info("job_phase_changed", phase=phase.value, percent=percent)
        self._emit(job)

    def _run(self, job: Job, source: SourceImage):
        with LogContext(job_id=job.id) as log_context:
            record_job_started()
            try:
                self._execute(job, source, log_context)
            except ProcessingCancelled as e:
                job.mark_cancelled()
                logger.info("job_cancelled", reason=str(e), tiles_done=job.processed_count)
            except Exception as e:
                failed_stage = job.phase.value
                logger.error(
                    "job_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    failed_stage=failed_stage,
                    traceback=traceback.format_exc()
                )
                message = e.message if isinstance(e, ProcessingError) else ProcessingError().message
                job.mark_failed(message, failed_stage)
            finally:
                record_job_completion(job.phase.value, job.elapsed_seconds)

            self._emit(job)

    def _execute(self, job: Job, source: SourceImage, log_context: LogContext):
        config = job.config
        job.mark_started()
        logger.info(
            "job_started",
            width=source.width,
            height=source.height,
            scale_factor=config.scale_factor,
            tile_size=config.tile_size,
            overlap=config.overlap
        )

        log_context.set_stage(JobPhase.PLANNING.value)
        self._transition(job, JobPhase.PLANNING, PROGRESS_ANALYZED)
        with track_stage_latency("planning"):
            tiles = plan_tiles(source.width, source.height, config.tile_size, config.overlap)
        job.set_tiles(tiles)
        logger.info("tiles_planned", tile_count=len(tiles))

        log_context.set_stage(JobPhase.TILING.value)
        self._transition(job, JobPhase.TILING, PROGRESS_PLANNED)
        with track_stage_latency("tiling"):
            processed = self._process_tiles(job, source, tiles)

        if job.processed_count != len(tiles):
            raise ProcessingError(
                f"Only {job.processed_count} of {len(tiles)} tiles were processed",
                stage="tiling"
            )

        log_context.set_stage(JobPhase.STITCHING.value)
        self._transition(job, JobPhase.STITCHING, PROGRESS_STITCHING)
        with track_stage_latency("stitching"):
            final = stitch(processed, source.width, source.height, config.scale_factor)
        del processed

        log_context.set_stage(JobPhase.FINALIZING.value)
        self._transition(job, JobPhase.FINALIZING, PROGRESS_FINALIZING)
        job.cancel_token.raise_if_cancelled()

        # A cancel that lands after the poll above still wins over completion
        if not job.mark_completed(final):
            raise ProcessingCancelled(job.cancel_token.reason or "Processing cancelled")
        logger.info(
            "job_completed",
            final_width=final.width,
            final_height=final.height,
            tile_count=len(tiles),
            duration_ms=int(job.elapsed_seconds * 1000)
        )

    def _process_tiles(self, job: Job, source: SourceImage, tiles: List[TileRect]) -> List[ProcessedTile]:
        """Upscale every tile; the returned list is sorted by (y, x)."""
        params = FilterParams.for_config(job.config)
        results: Dict[int, ProcessedTile] = {}

        if self.max_workers == 1 or len(tiles) == 1:
            for index, rect in enumerate(tiles):
                job.cancel_token.raise_if_cancelled()
                results[index] = self._process_one(job, source, rect, params)
                job.record_tile_done()
                self._log_tile_progress(job)
                self._emit(job)
        else:
            with ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix=f"tile-{job.id[:8]}"
            ) as executor:
                futures = {}
                for index, rect in enumerate(tiles):
                    context = contextvars.copy_context()
                    future = executor.submit(context.run, self._process_one, job, source, rect, params)
                    futures[future] = index

                try:
                    for future in as_completed(futures):
                        results[futures[future]] = future.result()
                        job.record_tile_done()
                        self._log_tile_progress(job)
                        self._emit(job)
                except BaseException:
                    # Drop queued tiles; running ones finish or stop at their next poll
                    for future in futures:
                        future.cancel()
                    raise

        return sorted(results.values(), key=lambda t: t.sort_key)

    def _process_one(self, job: Job, source: SourceImage, rect: TileRect, params: FilterParams) -> ProcessedTile:
        """Cut, upscale and filter one tile, with optional isolated retries."""
        token = job.cancel_token
        attempt = 0
        while True:
            token.raise_if_cancelled()
            if self.tile_delay_seconds > 0:
                token.wait(self.tile_delay_seconds)

            start = time.monotonic()
            try:
                tile = cut_tile(source, rect)
                processed = upscale_tile(tile, job.config, token, params)
            except ProcessingCancelled:
                raise
            except Exception as e:
                record_tile(job.config.scale_factor, time.monotonic() - start, status="error")
                if attempt >= self.max_tile_retries:
                    raise
                attempt += 1
                logger.warning(
                    "tile_retry",
                    x=rect.x,
                    y=rect.y,
                    attempt=attempt,
                    max_retries=self.max_tile_retries,
                    error=str(e)
                )
                continue

            record_tile(job.config.scale_factor, time.monotonic() - start)
            return processed

    def _log_tile_progress(self, job: Job):
        progress = job.snapshot()
        logger.info(
            "tile_completed",
            tiles_done=progress.tiles_done,
            tiles_total=progress.tiles_total,
            percent=progress.percent,
            eta_seconds=progress.eta_seconds
        )
