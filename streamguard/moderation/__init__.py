"""Content moderation for chat messages, comments and uploaded media."""

from streamguard.moderation.moderator import ContentModerator, ModerationContext, ModerationResult

__all__ = ["ContentModerator", "ModerationContext", "ModerationResult"]
