"""Repository layer for the render queue.

Provides data access abstractions for all domain entities.
"""

from reelcast.repositories.video_job import VideoJobRepository

__all__ = [
    "VideoJobRepository",
]
