# concurrency.py
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol


class Admission(str, Enum):
    PROCEED = "proceed"
    WAIT = "wait"
    PRIOR_CANCELLED = "prior_cancelled"


class GateHolder(Protocol):
    """Anything that can occupy a concurrency group: a run, or one job instance."""

    def cancel_for_concurrency(self, key: str) -> None:
        ...


@dataclass
class _Waiter:
    holder: Any
    on_grant: Optional[Callable[[], None]] = None


@dataclass
class ConcurrencyGroup:
    key: str
    holder: Any = None
    waiters: Deque[_Waiter] = field(default_factory=deque)


class ConcurrencyGate:
    """
    Engine-wide registry of concurrency groups.

    One holder per key. Without cancel-in-progress, later requests queue
    FIFO. With it, the current holder (and anything queued) is told to cancel
    and the new request is granted when the holder releases, i.e. once its
    teardown is done.

    Grants are delivered through the waiter's `on_grant` callback, always
    outside the gate lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[str, ConcurrencyGroup] = {}

    def admit(
        self,
        key: str,
        holder: GateHolder,
        *,
        cancel_in_progress: bool = False,
        on_grant: Optional[Callable[[], None]] = None,
    ) -> Admission:
        to_cancel: List[GateHolder] = []
        with self._lock:
            group = self._groups.setdefault(key, ConcurrencyGroup(key=key))
            if group.holder is None:
                group.holder = holder
                return Admission.PROCEED

            if cancel_in_progress:
                to_cancel.append(group.holder)
                to_cancel.extend(w.holder for w in group.waiters)
                group.waiters.clear()
                group.waiters.append(_Waiter(holder, on_grant))
                result = Admission.PRIOR_CANCELLED
            else:
                group.waiters.append(_Waiter(holder, on_grant))
                result = Admission.WAIT

        for prior in to_cancel:
            prior.cancel_for_concurrency(key)
        return result

    def release(self, key: str, holder: GateHolder) -> None:
        """Give up the slot (or a queued place) held by `holder`."""
        granted: Optional[_Waiter] = None
        with self._lock:
            group = self._groups.get(key)
            if group is None:
                return
            if group.holder is holder:
                if group.waiters:
                    granted = group.waiters.popleft()
                    group.holder = granted.holder
                else:
                    del self._groups[key]
            else:
                group.waiters = deque(w for w in group.waiters if w.holder is not holder)

        if granted is not None and granted.on_grant is not None:
            granted.on_grant()

    def holder_of(self, key: str) -> Any:
        with self._lock:
            group = self._groups.get(key)
            return group.holder if group else None

    def waiting(self, key: str) -> List[Any]:
        with self._lock:
            group = self._groups.get(key)
            return [w.holder for w in group.waiters] if group else []
