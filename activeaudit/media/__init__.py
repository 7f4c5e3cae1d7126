"""Capture sources and the preview surface."""

__all__ = [
    "capability",
    "tracks",
    "preview",
]
