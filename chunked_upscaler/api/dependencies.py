"""
FastAPI Dependencies

Provides dependency injection for:
- JobController (process-wide singleton, one active job at a time)
- Storage (singleton via StorageFactory)
"""

from typing import Optional

from chunked_upscaler.core.logging import get_logger
from chunked_upscaler.pipeline.controller import JobController

logger = get_logger(__name__)


# =============================================================================
# Global Singletons - the controller owns the single active job
# =============================================================================

_controller: Optional[JobController] = None


def get_job_controller() -> JobController:
    """Returns the singleton job controller."""
    global _controller
    if _controller is None:
        _controller = JobController()
        logger.info(
            "job_controller_created",
            max_workers=_controller.max_workers,
            max_tile_retries=_controller.max_tile_retries
        )
    return _controller


def shutdown_job_controller(timeout: float = 30.0):
    """Cancel any running job and drop the singleton. Called on app shutdown."""
    global _controller
    if _controller is not None:
        _controller.shutdown(timeout)
        _controller = None
