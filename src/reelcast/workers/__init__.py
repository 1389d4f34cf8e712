"""Background workers for async processing tasks."""

from reelcast.workers.video_processor import process_video_job
from reelcast.workers.video_worker import ProgressReporter, VideoWorkerPool, run_cleanup_loop

__all__ = [
    "ProgressReporter",
    "VideoWorkerPool",
    "process_video_job",
    "run_cleanup_loop",
]
