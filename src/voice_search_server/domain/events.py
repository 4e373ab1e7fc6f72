from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import TranscriptionError


class TranscriptUpdateKind(str, Enum):
    APPEND = "APPEND"
    REPLACE = "REPLACE"
    FINAL = "FINAL"


@dataclass(frozen=True, slots=True)
class TranscriptUpdate:
    """One change produced by the transcript assembler.

    `text` is the appended suffix for APPEND, the full pending tail for REPLACE
    and the whole transcript for FINAL. `display_text` is always the full text
    a client should show after applying the update.
    """

    kind: TranscriptUpdateKind
    text: str
    display_text: str
    committed_length: int


class SessionEventType(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class PartialEvent:
    text: str
    committed_length: int = 0
    type: SessionEventType = SessionEventType.PARTIAL

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type.value, "text": self.text}


@dataclass(frozen=True, slots=True)
class FinalEvent:
    text: str
    type: SessionEventType = SessionEventType.FINAL

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type.value, "text": self.text}


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    kind: str
    message: str
    fatal: bool = True
    close_code: int = 1011
    type: SessionEventType = SessionEventType.ERROR

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorEvent":
        if isinstance(exc, TranscriptionError):
            return cls(kind=exc.kind, message=exc.message, fatal=exc.fatal, close_code=exc.close_code)
        return cls(kind="InternalError", message=str(exc) or type(exc).__name__)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "kind": self.kind,
            "message": self.message,
            "fatal": self.fatal,
        }


SessionEvent = PartialEvent | FinalEvent | ErrorEvent


def is_terminal(event: SessionEvent) -> bool:
    if isinstance(event, FinalEvent):
        return True
    return isinstance(event, ErrorEvent) and event.fatal
