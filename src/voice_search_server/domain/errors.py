from __future__ import annotations


class TranscriptionError(Exception):
    """Base class for conditions reported to the client as an `error` event."""

    kind: str = "TranscriptionError"
    fatal: bool = True
    close_code: int = 1011

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ContainerParseError(TranscriptionError):
    kind = "ContainerParseError"
    close_code = 4400


class UnsupportedTrack(ContainerParseError):
    """No audio track with a supported codec in the container header."""


class DecodeError(TranscriptionError):
    kind = "DecodeError"
    close_code = 4415

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


class Overloaded(TranscriptionError):
    kind = "Overloaded"
    fatal = False
    close_code = 1013

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


class DurationExceeded(TranscriptionError):
    kind = "DurationExceeded"
    close_code = 4413


class InferenceFailure(TranscriptionError):
    kind = "InferenceFailure"
    close_code = 1011
