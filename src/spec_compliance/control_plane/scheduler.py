"""Per-module incremental re-check scheduling with trailing-edge debounce.

Each module moves through ``Idle -> Dirty -> Checking -> Idle``. Every state
change happens under one lock so a module transitions exactly once per event
and is never handed to two concurrent checks.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final

import structlog

from spec_compliance.constants import DEFAULT_DEBOUNCE_MS, SCHEDULER_TRANSITION_HISTORY

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class ModuleState(StrEnum):
    IDLE = "Idle"
    DIRTY = "Dirty"
    CHECKING = "Checking"


class TransitionReason(StrEnum):
    SIGNAL = "signal"
    FULL_CHECK = "full_check"
    CHECK_STARTED = "check_started"
    CHECK_COMPLETED = "check_completed"
    CARRIED_FORWARD = "carried_forward"


@dataclass(frozen=True, slots=True)
class SchedulerTransition:
    """One recorded state change of one module."""

    sequence: int
    module: str
    from_state: ModuleState
    to_state: ModuleState
    reason: TransitionReason
    at: float


@dataclass(slots=True)
class _ModuleSlot:
    state: ModuleState = ModuleState.IDLE
    deadline: float | None = None
    rerun: bool = False
    subjects: set[str] = field(default_factory=set)


TransitionListener = Callable[[SchedulerTransition], None]

_NO_SUBJECT: Final[str] = ""


class IncrementalScheduler:
    """Debounced ``Idle/Dirty/Checking`` state machine shared by watcher and runner."""

    def __init__(
        self,
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        clock: Clock = time.monotonic,
        listener: TransitionListener | None = None,
        history_limit: int = SCHEDULER_TRANSITION_HISTORY,
    ) -> None:
        if debounce_ms < 0:
            raise ValueError("debounce_ms must be >= 0")
        if history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        self._debounce_seconds = debounce_ms / 1000.0
        self._clock = clock
        self._listener = listener
        self._lock = threading.Lock()
        self._slots: dict[str, _ModuleSlot] = {}
        self._history: deque[SchedulerTransition] = deque(maxlen=history_limit)
        self._sequence = 0

    @property
    def debounce_ms(self) -> int:
        return round(self._debounce_seconds * 1000)

    def state(self, module: str) -> ModuleState:
        with self._lock:
            slot = self._slots.get(module)
            return ModuleState.IDLE if slot is None else slot.state

    def states(self) -> Mapping[str, ModuleState]:
        with self._lock:
            return {module: self._slots[module].state for module in sorted(self._slots)}

    def transitions(self, module: str | None = None) -> tuple[SchedulerTransition, ...]:
        with self._lock:
            history = tuple(self._history)
        if module is None:
            return history
        return tuple(item for item in history if item.module == module)

    def is_idle(self) -> bool:
        with self._lock:
            return all(slot.state is ModuleState.IDLE for slot in self._slots.values())

    def pending_subjects(self, module: str) -> tuple[str, ...]:
        """Subjects signalled since the module last entered Checking."""
        with self._lock:
            slot = self._slots.get(module)
            if slot is None:
                return ()
            return tuple(sorted(subject for subject in slot.subjects if subject))

    def signal(self, module: str, subject: str | None = None) -> ModuleState:
        """Record a change inside ``module``; returns the module's state afterwards."""
        module = _require_module(module)
        pending: list[SchedulerTransition] = []
        with self._lock:
            now = self._clock()
            slot = self._slots.setdefault(module, _ModuleSlot())
            slot.subjects.add(subject or _NO_SUBJECT)
            if slot.state is ModuleState.IDLE:
                slot.deadline = now + self._debounce_seconds
                pending.append(
                    self._transition_locked(
                        module, slot, ModuleState.DIRTY, TransitionReason.SIGNAL, now
                    )
                )
            elif slot.state is ModuleState.DIRTY:
                # Trailing edge: every signal pushes the deadline out.
                slot.deadline = now + self._debounce_seconds
            else:
                slot.rerun = True
            state = slot.state
        self._notify(pending)
        return state

    def request_full_check(self, modules: Iterable[str]) -> tuple[str, ...]:
        """Mark every module dirty and immediately due; returns modules newly marked."""
        marked: list[str] = []
        pending: list[SchedulerTransition] = []
        with self._lock:
            now = self._clock()
            for module in sorted({_require_module(item) for item in modules}):
                slot = self._slots.setdefault(module, _ModuleSlot())
                slot.subjects.add(_NO_SUBJECT)
                if slot.state is ModuleState.CHECKING:
                    slot.rerun = True
                    continue
                slot.deadline = now
                if slot.state is ModuleState.IDLE:
                    pending.append(
                        self._transition_locked(
                            module, slot, ModuleState.DIRTY, TransitionReason.FULL_CHECK, now
                        )
                    )
                marked.append(module)
        self._notify(pending)
        return tuple(marked)

    def due_modules(self, now: float | None = None) -> tuple[str, ...]:
        """Dirty modules whose debounce window has elapsed, sorted."""
        with self._lock:
            current = self._clock() if now is None else now
            return tuple(
                module
                for module in sorted(self._slots)
                if self._slots[module].state is ModuleState.DIRTY
                and self._slots[module].deadline is not None
                and self._slots[module].deadline <= current
            )

    def next_deadline(self) -> float | None:
        """Earliest pending debounce deadline, if any module is dirty."""
        with self._lock:
            deadlines = [
                slot.deadline
                for slot in self._slots.values()
                if slot.state is ModuleState.DIRTY and slot.deadline is not None
            ]
        return min(deadlines) if deadlines else None

    def begin_check(self, modules: Iterable[str]) -> tuple[str, ...]:
        """Atomically move Dirty modules to Checking; returns only the modules acquired."""
        acquired: list[str] = []
        pending: list[SchedulerTransition] = []
        with self._lock:
            now = self._clock()
            for module in sorted(set(modules)):
                slot = self._slots.get(module)
                if slot is None or slot.state is not ModuleState.DIRTY:
                    continue
                slot.deadline = None
                slot.rerun = False
                slot.subjects.clear()
                pending.append(
                    self._transition_locked(
                        module, slot, ModuleState.CHECKING, TransitionReason.CHECK_STARTED, now
                    )
                )
                acquired.append(module)
        self._notify(pending)
        return tuple(acquired)

    def complete_check(self, module: str) -> ModuleState:
        """Leave Checking; signals received meanwhile carry forward into a fresh Dirty."""
        pending: list[SchedulerTransition] = []
        with self._lock:
            now = self._clock()
            slot = self._slots.get(module)
            if slot is None or slot.state is not ModuleState.CHECKING:
                state = ModuleState.IDLE if slot is None else slot.state
                raise ValueError(f"module {module!r} is not being checked (state={state})")
            if slot.rerun:
                slot.rerun = False
                slot.deadline = now + self._debounce_seconds
                pending.append(
                    self._transition_locked(
                        module, slot, ModuleState.DIRTY, TransitionReason.CARRIED_FORWARD, now
                    )
                )
            else:
                pending.append(
                    self._transition_locked(
                        module, slot, ModuleState.IDLE, TransitionReason.CHECK_COMPLETED, now
                    )
                )
            state = slot.state
        self._notify(pending)
        return state

    def _transition_locked(
        self,
        module: str,
        slot: _ModuleSlot,
        to_state: ModuleState,
        reason: TransitionReason,
        now: float,
    ) -> SchedulerTransition:
        self._sequence += 1
        transition = SchedulerTransition(
            sequence=self._sequence,
            module=module,
            from_state=slot.state,
            to_state=to_state,
            reason=reason,
            at=now,
        )
        slot.state = to_state
        self._history.append(transition)
        return transition

    def _notify(self, transitions: Iterable[SchedulerTransition]) -> None:
        # Listeners run outside the lock so they may call back into the scheduler.
        for transition in transitions:
            logger.debug(
                "scheduler_transition",
                module=transition.module,
                from_state=transition.from_state.value,
                to_state=transition.to_state.value,
                reason=transition.reason.value,
            )
            if self._listener is not None:
                self._listener(transition)


def _require_module(module: str) -> str:
    if not isinstance(module, str) or not module.strip():
        raise ValueError("module must be a non-empty string")
    return module.strip()


__all__ = [
    "IncrementalScheduler",
    "ModuleState",
    "SchedulerTransition",
    "TransitionListener",
    "TransitionReason",
]
