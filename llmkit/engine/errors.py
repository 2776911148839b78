"""Exception taxonomy for the engine.

Configuration problems surface before a session exists, resource problems at
load time, execution problems per response. Callers can catch the family base
class or the stdlib base each one also derives from.
"""

from __future__ import annotations


class LlmkitError(Exception):
    pass


class ConfigurationError(LlmkitError, ValueError):
    """Unknown architecture identifier, malformed model directory, bad config value."""


class ResourceError(LlmkitError, RuntimeError):
    """Missing or corrupt vocabulary / model artifact."""


class ImageFetchError(ResourceError):
    """An image referenced by a vision prompt could not be fetched or decoded."""


class ExecutionError(LlmkitError, RuntimeError):
    """A forward call failed or returned malformed tensors.

    `partial_text` holds whatever was already emitted for the response.
    """

    def __init__(self, message: str, *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text
