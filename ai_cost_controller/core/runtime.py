"""
Cold-path and hot-path runtime plumbing.

The two paths share nothing mutable except the active rule list, which is
replaced wholesale on every change so readers always see a consistent
snapshot without locking.
"""

import logging
import threading
from collections import deque
from typing import Iterable, List, Optional, Sequence, Tuple

from .compiler import DecisionCompiler, DecisionObject, DecisionState
from ai_cost_controller.storage.models import ActiveRule, InferenceEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 2000
DEFAULT_ANALYSIS_EVENTS = 1000


class EventWindow:
    """Bounded in-memory buffer of the most recent events."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        if max_events <= 0:
            raise ValueError("max_events must be > 0")
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def append(self, event: InferenceEvent) -> None:
        with self._lock:
            self._events.append(event)

    def extend(self, events: Iterable[InferenceEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    def snapshot(self, last_n: Optional[int] = None) -> List[InferenceEvent]:
        """Copy of the newest `last_n` events (all when None), oldest first."""
        with self._lock:
            events = list(self._events)
        if last_n is not None:
            events = events[-last_n:] if last_n > 0 else []
        return events

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class ActiveRuleSet:
    """Copy-on-write holder for the rules the hot path honors."""

    def __init__(self, rules: Sequence[ActiveRule] = ()):
        self._rules: Tuple[ActiveRule, ...] = tuple(rules)
        self._write_lock = threading.Lock()

    def snapshot(self) -> Tuple[ActiveRule, ...]:
        """Current rules; the returned tuple never changes."""
        return self._rules

    def replace(self, rules: Sequence[ActiveRule]) -> None:
        with self._write_lock:
            self._rules = tuple(rules)

    def add(self, rule: ActiveRule) -> None:
        with self._write_lock:
            self._rules = self._rules + (rule,)

    def remove(self, rule_id: str) -> None:
        with self._write_lock:
            self._rules = tuple(r for r in self._rules if r.id != rule_id)


class CompileScheduler:
    """Runs the compiler over the window, at most one compile at a time.

    A trigger that arrives while a compile is in flight is dropped rather
    than queued, so a slow compile can never build a backlog.
    """

    def __init__(
        self,
        compiler: DecisionCompiler,
        window: EventWindow,
        analysis_events: int = DEFAULT_ANALYSIS_EVENTS,
    ):
        self.compiler = compiler
        self.window = window
        self.analysis_events = analysis_events
        self.latest_decision: Optional[DecisionObject] = None
        self.dropped_triggers = 0
        self._in_flight = threading.Lock()
        self._dropped_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def trigger(self) -> Optional[DecisionObject]:
        """Compile once over the latest window.

        Returns:
            The compiled decision, or None when the compile was skipped,
            dropped, or produced nothing
        """
        if not self._in_flight.acquire(blocking=False):
            with self._dropped_lock:
                self.dropped_triggers += 1
            logger.debug("Compile already in flight; dropping trigger")
            return None
        try:
            decision = self.compiler.compile(self.window.snapshot(self.analysis_events))
        finally:
            self._in_flight.release()

        if decision is not None and decision.decision_state != DecisionState.INSUFFICIENT_EVIDENCE:
            self.latest_decision = decision
        return decision

    def start(self, interval_seconds: float) -> None:
        """Trigger compiles every `interval_seconds` on a daemon thread."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("scheduler is already running")

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(interval_seconds,), name="compile-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.trigger()
            except Exception:
                # The next cycle supersedes a failed one
                logger.exception("Compile cycle failed")
