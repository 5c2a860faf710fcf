"""Prewarm progress side channel for ad-group refreshes.

WHAT:
    Observer the worker notifies around each ad-group refresh:
    running -> completed | failed, keyed by (customer_id, campaign_id).

WHY:
    The dashboard shows a "loading ad groups" indicator while a campaign's
    children are prefetched. The writer's idempotent logic must not depend
    on it, so the worker only talks to an observer interface and tests can
    pass NullPrewarmObserver.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple


class PrewarmObserver(Protocol):
    def mark_running(self, customer_id: str, campaign_id: str) -> None: ...

    def mark_completed(self, customer_id: str, campaign_id: str) -> None: ...

    def mark_failed(self, customer_id: str, campaign_id: str, error: str) -> None: ...


class NullPrewarmObserver:
    def mark_running(self, customer_id: str, campaign_id: str) -> None:
        pass

    def mark_completed(self, customer_id: str, campaign_id: str) -> None:
        pass

    def mark_failed(self, customer_id: str, campaign_id: str, error: str) -> None:
        pass


@dataclass
class PrewarmState:
    status: str  # running | completed | failed
    updated_at: datetime
    error: Optional[str] = None


class PrewarmProgressTracker:
    """In-process tracker. Thread-safe since jobs run via asyncio.to_thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[Tuple[str, str], PrewarmState] = {}

    def _set(self, customer_id: str, campaign_id: str, status: str, error: Optional[str] = None) -> None:
        with self._lock:
            self._states[(customer_id, campaign_id)] = PrewarmState(
                status=status, updated_at=datetime.now(timezone.utc), error=error
            )

    def mark_running(self, customer_id: str, campaign_id: str) -> None:
        self._set(customer_id, campaign_id, "running")

    def mark_completed(self, customer_id: str, campaign_id: str) -> None:
        self._set(customer_id, campaign_id, "completed")

    def mark_failed(self, customer_id: str, campaign_id: str, error: str) -> None:
        self._set(customer_id, campaign_id, "failed", error)

    def get_progress(self, customer_id: str) -> Dict[str, PrewarmState]:
        """Campaign id -> latest state for one customer."""
        with self._lock:
            return {
                campaign_id: state
                for (cid, campaign_id), state in self._states.items()
                if cid == customer_id
            }
