from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ce_browser.metadata_io.session_record import now_iso


@dataclass(frozen=True)
class ClassificationEvent:
    """
    Diff record of one classification step, captured before it is applied.

    Only the cells whose value actually changes are recorded, together with
    their old values, so undo can restore exactly the pre-mutation state.
    """

    cell_indices: Tuple[int, ...]
    field: str
    old_values: Tuple[Any, ...]
    new_values: Tuple[Any, ...]
    created_at: str = field(default_factory=now_iso)

    def old_by_index(self) -> Dict[int, Any]:
        return dict(zip(self.cell_indices, self.old_values))


# Sentinel bottom entry, never popped
BASELINE = ClassificationEvent(cell_indices=(), field="", old_values=(), new_values=(), created_at="")


class HistoryStack:
    """
    Append-only undo stack whose entry 0 is the baseline.
    """

    def __init__(self):
        self._events: List[ClassificationEvent] = [BASELINE]

    def __len__(self) -> int:
        return len(self._events)

    def push(self, event: ClassificationEvent) -> None:
        self._events.append(event)

    def pop(self) -> Optional[ClassificationEvent]:
        """Pop the newest event, or return None if only the baseline is left."""
        if len(self._events) <= 1:
            return None
        return self._events.pop()

    def peek(self) -> Optional[ClassificationEvent]:
        if len(self._events) <= 1:
            return None
        return self._events[-1]

    @property
    def can_undo(self) -> bool:
        return len(self._events) > 1

    def events(self) -> Tuple[ClassificationEvent, ...]:
        """All events newest last, baseline excluded."""
        return tuple(self._events[1:])

    def compact(self, keep: int) -> int:
        """
        Drop the oldest events so that at most ``keep`` remain above the
        baseline. Returns the number of events dropped.
        """
        excess = len(self._events) - 1 - keep
        if excess <= 0:
            return 0
        del self._events[1:1 + excess]
        return excess
