"""Streaming file synchronization into running containers."""

from .pipe import BytePipe
from .streamer import FileSyncStreamer, make_tar

__all__ = ['BytePipe', 'FileSyncStreamer', 'make_tar']
