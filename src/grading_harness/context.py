"""Run context shared by the supervisor, proxy, executor and orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .capture import DEFAULT_STAGE, UNKNOWN_QUESTION, CaptureKey, CaptureStore, Scope


@dataclass
class RunContext:
    """Capture store plus the orchestrator's current (question, stage) cursor.

    Output pumps and proxy handlers read the cursor at the moment they flush,
    so captured text lands under whichever step is currently executing.
    """

    store: CaptureStore = field(default_factory=CaptureStore)
    question_code: str = UNKNOWN_QUESTION
    stage: str = DEFAULT_STAGE

    def move_to(self, question_code: Optional[str], stage: Optional[str]) -> None:
        key = CaptureKey.of(Scope.CLIENTS, question_code, stage)
        self.question_code = key.question_code
        self.stage = key.stage

    def key(self, scope: Scope) -> CaptureKey:
        return CaptureKey.of(scope, self.question_code, self.stage)

    def reset(self) -> None:
        self.store.clear()
        self.question_code = UNKNOWN_QUESTION
        self.stage = DEFAULT_STAGE
