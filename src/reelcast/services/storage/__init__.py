from reelcast.services.storage.object_storage import (
    LocalObjectStorage,
    ObjectStorage,
    S3ObjectStorage,
    create_storage,
    generate_video_key,
)

__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "S3ObjectStorage",
    "create_storage",
    "generate_video_key",
]
