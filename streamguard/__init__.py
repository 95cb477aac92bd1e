"""StreamGuard: security and trust defense layer for a video-streaming service."""

__version__ = "0.1.0"
