from __future__ import annotations

from enum import Enum
from typing import Optional


class CaptureState(str, Enum):
    IDLE = "IDLE"
    PROMPTING_REASON = "PROMPTING_REASON"
    SUBMITTING = "SUBMITTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


REASON_REQUIRED = "A reason is required"

_ALLOWED_FROM: dict[str, tuple[CaptureState, ...]] = {
    "begin": (CaptureState.IDLE,),
    "update": (CaptureState.PROMPTING_REASON, CaptureState.FAILED),
    "submit": (CaptureState.PROMPTING_REASON,),
    "succeed": (CaptureState.SUBMITTING,),
    "fail": (CaptureState.SUBMITTING,),
    "retry": (CaptureState.FAILED,),
    "cancel": (CaptureState.PROMPTING_REASON, CaptureState.FAILED),
}


class ReasonCapture:
    """Interaction state for collecting a free-text reason before an action.

    Independent of the entity status graph: it only knows whether the chosen
    action needs a reason and what the actor has typed so far. A failed
    submission keeps the typed reason so the actor can retry without
    retyping it.
    """

    def __init__(self):
        self.state = CaptureState.IDLE
        self.action: Optional[Enum] = None
        self.requires_reason = False
        self.reason = ""
        self.field_errors: dict[str, str] = {}
        self.error: Optional[str] = None
        self.last_outcome: Optional[CaptureState] = None

    def _expect(self, operation: str) -> None:
        if self.state not in _ALLOWED_FROM[operation]:
            raise ValueError(f"Cannot {operation} while {self.state.value}")

    def _reset(self) -> None:
        self.state = CaptureState.IDLE
        self.action = None
        self.requires_reason = False
        self.reason = ""
        self.field_errors = {}
        self.error = None

    @property
    def trimmed_reason(self) -> Optional[str]:
        return self.reason.strip() or None

    def begin(self, action: Enum, requires_reason: bool) -> CaptureState:
        self._expect("begin")
        self.action = action
        self.requires_reason = requires_reason
        self.field_errors = {}
        self.error = None
        self.last_outcome = None
        self.state = CaptureState.PROMPTING_REASON if requires_reason else CaptureState.SUBMITTING
        return self.state

    def update(self, text: str) -> None:
        self._expect("update")
        self.reason = text
        self.field_errors.pop("reason", None)

    def submit(self) -> bool:
        """Move to SUBMITTING if the reason is usable; otherwise record a field error and stay."""
        self._expect("submit")
        if self.requires_reason and not self.reason.strip():
            self.field_errors["reason"] = REASON_REQUIRED
            return False
        self.field_errors = {}
        self.state = CaptureState.SUBMITTING
        return True

    def succeed(self) -> None:
        self._expect("succeed")
        self._reset()
        self.last_outcome = CaptureState.SUCCEEDED

    def fail(self, message: str, field_errors: dict[str, str] | None = None) -> None:
        self._expect("fail")
        self.state = CaptureState.FAILED
        self.error = message
        self.field_errors = dict(field_errors or {})
        self.last_outcome = CaptureState.FAILED

    def retry(self) -> CaptureState:
        self._expect("retry")
        self.error = None
        self.field_errors = {}
        self.state = CaptureState.PROMPTING_REASON if self.requires_reason else CaptureState.SUBMITTING
        return self.state

    def cancel(self) -> None:
        self._expect("cancel")
        self._reset()
