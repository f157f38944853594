# app/client/progress.py
"""
Four-stage progress indicator layered over a single chat request.

Stages only ever move forward: activating a stage completes every stage
before it. Nothing here gates network activity.
"""

from enum import Enum
from typing import Callable


class Stage(str, Enum):
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    DRAFTING = "drafting"
    VERIFYING = "verifying"


class StageState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.ANALYZING,
    Stage.SEARCHING,
    Stage.DRAFTING,
    Stage.VERIFYING,
)

ProgressListener = Callable[[dict[Stage, StageState]], None]


class ProgressTracker:
    def __init__(self, on_change: ProgressListener | None = None) -> None:
        self._on_change = on_change
        self._states: dict[Stage, StageState] = {}

    @property
    def visible(self) -> bool:
        return bool(self._states)

    def snapshot(self) -> dict[Stage, StageState]:
        return dict(self._states)

    def start(self) -> None:
        self._states = {stage: StageState.PENDING for stage in STAGE_ORDER}
        self.advance(Stage.ANALYZING)

    def advance(self, stage: Stage) -> None:
        if not self._states:
            self._states = {s: StageState.PENDING for s in STAGE_ORDER}
        target = STAGE_ORDER.index(stage)
        if self._states[stage] == StageState.COMPLETE:
            return
        for idx, current in enumerate(STAGE_ORDER):
            if idx < target:
                self._states[current] = StageState.COMPLETE
        self._states[stage] = StageState.ACTIVE
        self._notify()

    def finish(self) -> None:
        if not self._states:
            return
        self._states = {stage: StageState.COMPLETE for stage in STAGE_ORDER}
        self._notify()

    def clear(self) -> None:
        self._states = {}
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.snapshot())
