from __future__ import annotations


class StoryModeError(Exception):
    """Base class for errors raised by the conversation engine."""


class AttachmentExtractionFailed(StoryModeError):
    """Raised when text cannot be extracted from one attachment.

    Recovered locally by the attachment resolver, which substitutes a
    placeholder block and keeps processing the rest of the turn.
    """

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"Could not process {filename}: {reason}")
        self.filename = filename
        self.reason = reason


class GenerationRequestFailed(StoryModeError):
    """Raised when the text-generation service fails before or during streaming."""


class GenerationTimeout(GenerationRequestFailed):
    """Raised when the generation stream exceeds its bounded wait."""


class GenerationConfigError(GenerationRequestFailed):
    """Raised when generation credentials or configuration are missing."""


class MessageFinalizedError(StoryModeError):
    """Raised when content is appended to a message that is already final."""
