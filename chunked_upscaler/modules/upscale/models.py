"""
Upscale Job Data Model

Pixel containers passed between pipeline stages, the validated job
configuration, and the in-memory Job record with phase/progress tracking.
"""

import time
import uuid
import threading
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from chunked_upscaler.core.config import settings
from chunked_upscaler.pipeline.cancellation import CancelToken


CHANNELS = 4  # R, G, B, A


class OutputFormat(str, Enum):
    """Encodings supported by the download artifact."""
    PNG = "png"
    JPG = "jpg"
    WEBP = "webp"


class JobPhase(str, Enum):
    """Job state machine phases."""
    IDLE = "idle"
    PLANNING = "planning"
    TILING = "tiling"
    STITCHING = "stitching"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobPhase.COMPLETED, JobPhase.CANCELLED, JobPhase.FAILED)


PHASE_MESSAGES: Dict[JobPhase, str] = {
    JobPhase.IDLE: "Waiting to start",
    JobPhase.PLANNING: "Analyzing image",
    JobPhase.TILING: "Upscaling tiles",
    JobPhase.STITCHING: "Stitching tiles",
    JobPhase.FINALIZING: "Finalizing image",
    JobPhase.COMPLETED: "Upscale complete",
    JobPhase.CANCELLED: "Processing cancelled",
    JobPhase.FAILED: "Processing failed",
}


# =============================================================================
# Configuration
# =============================================================================

class UpscaleConfig(BaseModel):
    """User-supplied job configuration."""
    model_config = ConfigDict(frozen=True)

    scale_factor: int = Field(default=4, ge=2, le=8)
    sharpness: int = Field(default=50, ge=0, le=100)
    noise_reduction: int = Field(default=30, ge=0, le=100)
    tile_size: int = Field(default=512, ge=2)
    overlap: int = Field(default=16, ge=0)
    output_format: OutputFormat = OutputFormat.PNG
    output_quality: int = Field(default=95, ge=60, le=100)

    @model_validator(mode="after")
    def check_overlap(self) -> "UpscaleConfig":
        if self.overlap >= self.tile_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be smaller than tile_size ({self.tile_size})"
            )
        return self

    @classmethod
    def from_settings(cls, **overrides: Any) -> "UpscaleConfig":
        """Build a config with tiling defaults taken from application settings."""
        values: Dict[str, Any] = {
            "scale_factor": settings.DEFAULT_SCALE_FACTOR,
            "tile_size": settings.TILE_SIZE,
            "overlap": settings.TILE_OVERLAP,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# =============================================================================
# Pixel containers
# =============================================================================

def _freeze(pixels: np.ndarray, what: str) -> np.ndarray:
    if pixels.ndim != 3 or pixels.shape[2] != CHANNELS:
        raise ValueError(f"{what} must be an (height, width, 4) RGBA array, got {pixels.shape}")
    if pixels.dtype != np.uint8:
        raise ValueError(f"{what} must be uint8, got {pixels.dtype}")
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise ValueError(f"{what} must not be empty")
    pixels.setflags(write=False)
    return pixels


@dataclass(frozen=True, eq=False)
class SourceImage:
    """Immutable decoded RGBA buffer handed to the core by the decode boundary."""
    pixels: np.ndarray
    filename: Optional[str] = None

    def __post_init__(self):
        _freeze(self.pixels, "SourceImage")

    @classmethod
    def from_array(cls, array: np.ndarray, filename: Optional[str] = None) -> "SourceImage":
        """Copy an RGB or RGBA uint8 array into a SourceImage (RGB gets opaque alpha)."""
        array = np.asarray(array, dtype=np.uint8)
        if array.ndim == 3 and array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 255, dtype=np.uint8)
            array = np.concatenate([array, alpha], axis=2)
        return cls(pixels=np.array(array, dtype=np.uint8, copy=True), filename=filename)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True)
class TileRect:
    """Source-space rectangle of one tile."""
    x: int
    y: int
    width: int
    height: int

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.y, self.x)


@dataclass(frozen=True, eq=False)
class Tile:
    """A tile rectangle plus a private copy of the pixels it covers."""
    rect: TileRect
    pixels: np.ndarray


@dataclass(frozen=True, eq=False)
class ProcessedTile:
    """Upscaled, filtered tile positioned at its source-space origin."""
    x: int
    y: int
    scale_factor: int
    pixels: np.ndarray

    def __post_init__(self):
        _freeze(self.pixels, "ProcessedTile")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.y, self.x)


@dataclass(frozen=True, eq=False)
class FinalImage:
    """Stitched output of exactly source size * scale factor."""
    pixels: np.ndarray
    scale_factor: int

    def __post_init__(self):
        _freeze(self.pixels, "FinalImage")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


# =============================================================================
# Progress / metadata schemas
# =============================================================================

class ProgressEvent(BaseModel):
    """Emitted on every state or progress change."""
    job_id: str
    phase: JobPhase
    percent: float = Field(..., ge=0, le=100)
    tiles_done: int = 0
    tiles_total: int = 0
    eta_seconds: Optional[int] = None
    message: str = ""


class UpscaleMetadata(BaseModel):
    """Dimensions summary handed to the encode boundary with the final buffer."""
    original_width: int
    original_height: int
    final_width: int
    final_height: int
    tile_count: int


# =============================================================================
# Job
# =============================================================================

class Job:
    """
    In-memory record of one upscale job.

    All mutation goes through the mark_* / record_* methods, which hold the
    job lock so that observers polling from another thread see consistent
    snapshots.
    """

    def __init__(
        self,
        config: UpscaleConfig,
        source_width: int,
        source_height: int,
        filename: Optional[str] = None
    ):
        self.id = str(uuid.uuid4())
        self.config = config
        self.source_width = source_width
        self.source_height = source_height
        self.filename = filename
        self.cancel_token = CancelToken()

        self.phase = JobPhase.IDLE
        self.percent = 0.0
        self.tiles: List[TileRect] = []
        self.processed_count = 0
        self.eta_seconds: Optional[int] = None

        self.result: Optional[FinalImage] = None
        self.error_message: Optional[str] = None
        self.error_stage: Optional[str] = None
        self.artifact_key: Optional[str] = None

        self.created_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None
        self._started_monotonic: Optional[float] = None
        self._finished_monotonic: Optional[float] = None

        self._lock = threading.Lock()
        self._done = threading.Event()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_started(self):
        with self._lock:
            self.percent = 0.0
            self.processed_count = 0
            self.eta_seconds = None
            self._started_monotonic = time.monotonic()

    def enter_phase(self, phase: JobPhase, percent: float):
        with self._lock:
            self.phase = phase
            self.percent = percent

    def set_tiles(self, tiles: List[TileRect]):
        with self._lock:
            self.tiles = list(tiles)
            self.processed_count = 0

    def record_tile_done(self):
        """Advance processed_count and recompute percent and ETA."""
        with self._lock:
            total = len(self.tiles)
            if self.processed_count >= total:
                raise RuntimeError("processed_count cannot exceed the number of tiles")
            self.processed_count += 1
            done = self.processed_count
            self.percent = 10.0 + 70.0 * done / total
            elapsed = time.monotonic() - (self._started_monotonic or time.monotonic())
            self.eta_seconds = int(round(elapsed / done * (total - done)))

    def request_cancel(self, reason: str = "Processing cancelled") -> bool:
        """Signal the cancel token unless the job already reached a terminal phase."""
        with self._lock:
            if self.phase.is_terminal:
                return False
            return self.cancel_token.cancel(reason)

    def mark_completed(self, result: FinalImage) -> bool:
        """
        Commit the result. Returns False, leaving the job untouched, if
        cancellation was requested before the commit.
        """
        with self._lock:
            if self.cancel_token.is_cancelled:
                return False
            self.result = result
            self.phase = JobPhase.COMPLETED
            self.percent = 100.0
            self.eta_seconds = None
            self._finish()
            return True

    def mark_cancelled(self):
        with self._lock:
            self.result = None
            self.phase = JobPhase.CANCELLED
            self.percent = 0.0
            self.eta_seconds = None
            self._finish()

    def mark_failed(self, error_message: str, error_stage: Optional[str]):
        with self._lock:
            self.result = None
            self.phase = JobPhase.FAILED
            self.eta_seconds = None
            self.error_message = error_message
            self.error_stage = error_stage
            self._finish()

    def _finish(self):
        self.completed_at = datetime.now(timezone.utc)
        self._finished_monotonic = time.monotonic()
        self._done.set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def tiles_total(self) -> int:
        return len(self.tiles)

    @property
    def elapsed_seconds(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        end = self._finished_monotonic or time.monotonic()
        return end - self._started_monotonic

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job reaches a terminal phase."""
        return self._done.wait(timeout)

    def snapshot(self) -> ProgressEvent:
        with self._lock:
            return ProgressEvent(
                job_id=self.id,
                phase=self.phase,
                percent=round(self.percent, 2),
                tiles_done=self.processed_count,
                tiles_total=len(self.tiles),
                eta_seconds=self.eta_seconds,
                message=PHASE_MESSAGES[self.phase]
            )

    @property
    def metadata(self) -> UpscaleMetadata:
        scale = self.config.scale_factor
        return UpscaleMetadata(
            original_width=self.source_width,
            original_height=self.source_height,
            final_width=self.source_width * scale,
            final_height=self.source_height * scale,
            tile_count=len(self.tiles)
        )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        progress = self.snapshot()
        return {
            "id": self.id,
            "phase": progress.phase.value,
            "message": progress.message,
            "percent": progress.percent,
            "tiles_done": progress.tiles_done,
            "tiles_total": progress.tiles_total,
            "eta_seconds": progress.eta_seconds,
            "config": self.config.model_dump(mode="json"),
            "metadata": self.metadata.model_dump(),
            "error": {
                "message": self.error_message,
                "stage": self.error_stage
            } if self.error_message else None,
            "processing_time_ms": int(self.elapsed_seconds * 1000),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None
        }
