"""Failure types raised while turning a source into prompt records."""

from __future__ import annotations


class ExtractionError(RuntimeError):
    """Base class for every extraction or image-generation failure."""


class BackendError(ExtractionError):
    """The generative backend rejected or failed the request."""

    def __init__(self, status_code: int | None, message: str) -> None:
        super().__init__(message if status_code is None else f"{status_code} {message}")
        self.status_code = status_code


class SourceTooLargeError(BackendError):
    """An uploaded source exceeds the configured size limit."""

    def __init__(self, name: str, size: int, limit: int) -> None:
        super().__init__(400, f"Source {name} is {size} bytes; limit is {limit}")


class InvalidResponseError(ExtractionError):
    """The model response could not be parsed into prompt entries."""


class NoImageProducedError(ExtractionError):
    """The image model answered without any inline image part."""
