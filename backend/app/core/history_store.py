"""
DialBridge - Call History Store

Stores one immutable entry per finalized call for the history view and
analytics.

Notes:
    - Entries are appended by the call ledger at finalization only
    - A second entry for the same call id is refused
    - An operator's post-call form replaces the entry in place (amend)
    - In-memory store is bounded to prevent memory issues
    - All data is ephemeral (lost on restart)
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import timedelta
from threading import Lock
from typing import Dict, List, Optional, Protocol, runtime_checkable

from app.config import Settings
from app.core.types import (
    CallAnalytics,
    CallHistoryEntry,
    CallOutcome,
    CallStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class CallHistoryStore(Protocol):
    """
    Protocol for call history storage.

    Implementations must be thread-safe and handle bounded storage.
    """

    @abstractmethod
    async def record_call(self, entry: CallHistoryEntry) -> bool:
        """Append an entry. Returns False if the call id is already recorded."""
        ...

    @abstractmethod
    async def get_recent(self, limit: int = 100) -> List[CallHistoryEntry]:
        """Get the most recent entries, newest first."""
        ...

    @abstractmethod
    async def get_entry(self, call_id: str) -> Optional[CallHistoryEntry]:
        """Get the entry for a call id."""
        ...

    @abstractmethod
    async def amend(self, call_id: str, **changes) -> Optional[CallHistoryEntry]:
        """Replace a call's entry with an updated copy."""
        ...

    @abstractmethod
    async def get_aggregate_stats(self) -> CallAnalytics:
        """Get aggregated analytics across all stored entries."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Clear all stored entries."""
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryCallHistoryStore:
    """
    In-memory implementation of CallHistoryStore.

    Entries are kept in insertion order; the oldest are trimmed once
    max_entries is exceeded. Thread-safe.
    """

    def __init__(self, max_entries: int = 1000):
        self._max_entries = max_entries
        self._lock = Lock()
        self._entries: List[CallHistoryEntry] = []
        self._ids: set = set()

        logger.info("InMemoryCallHistoryStore initialized: max_entries=%d", max_entries)

    async def record_call(self, entry: CallHistoryEntry) -> bool:
        with self._lock:
            if entry.call_id in self._ids:
                logger.warning("History entry already exists for call %s", entry.call_id)
                return False

            self._entries.append(entry)
            self._ids.add(entry.call_id)

            if len(self._entries) > self._max_entries:
                excess = len(self._entries) - self._max_entries
                for old in self._entries[:excess]:
                    self._ids.discard(old.call_id)
                self._entries = self._entries[excess:]
                logger.debug("Trimmed %d old entries from history store", excess)

            logger.info(
                "Call archived: call=%s, status=%s, outcome=%s, duration=%ds",
                entry.call_id, entry.status.value, entry.outcome, entry.duration_seconds,
            )
            return True

    async def get_recent(self, limit: int = 100) -> List[CallHistoryEntry]:
        with self._lock:
            return list(reversed(self._entries[-limit:])) if limit > 0 else []

    async def get_entry(self, call_id: str) -> Optional[CallHistoryEntry]:
        with self._lock:
            for entry in self._entries:
                if entry.call_id == call_id:
                    return entry
            return None

    async def amend(self, call_id: str, **changes) -> Optional[CallHistoryEntry]:
        with self._lock:
            for index, entry in enumerate(self._entries):
                if entry.call_id == call_id:
                    updated = replace(entry, **changes)
                    self._entries[index] = updated
                    logger.info("History entry amended: call=%s, fields=%s", call_id, sorted(changes))
                    return updated
            return None

    async def get_aggregate_stats(self) -> CallAnalytics:
        with self._lock:
            if not self._entries:
                return CallAnalytics()

            now = utcnow()
            one_hour_ago = now - timedelta(hours=1)
            one_day_ago = now - timedelta(hours=24)

            outcome_counts: Dict[str, int] = defaultdict(int)
            sentiment_counts: Dict[str, int] = defaultdict(int)
            ended_by_counts: Dict[str, int] = defaultdict(int)

            completed = 0
            failed = 0
            total_duration = 0
            connected_calls = 0
            calls_last_hour = 0
            calls_last_24h = 0

            for entry in self._entries:
                outcome_counts[entry.outcome] += 1
                sentiment_counts[entry.sentiment] += 1
                ended_by_counts[entry.ended_by.value] += 1

                if entry.status == CallStatus.COMPLETED:
                    completed += 1
                else:
                    failed += 1

                if entry.duration_seconds > 0:
                    total_duration += entry.duration_seconds
                    connected_calls += 1

                if entry.started_at >= one_hour_ago:
                    calls_last_hour += 1
                if entry.started_at >= one_day_ago:
                    calls_last_24h += 1

            total = len(self._entries)
            meetings = outcome_counts.get(CallOutcome.MEETING_BOOKED.value, 0)

            return CallAnalytics(
                total_calls=total,
                completed_calls=completed,
                failed_calls=failed,
                meetings_booked=meetings,
                conversion_rate=(meetings / total) * 100,
                avg_duration_seconds=(
                    total_duration / connected_calls if connected_calls > 0 else 0.0
                ),
                calls_last_hour=calls_last_hour,
                calls_last_24h=calls_last_24h,
                outcome_counts=dict(outcome_counts),
                sentiment_counts=dict(sentiment_counts),
                ended_by_counts=dict(ended_by_counts),
            )

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._ids.clear()
            logger.info("Call history store cleared")


# =============================================================================
# No-Op Implementation (history disabled)
# =============================================================================

class NoOpCallHistoryStore:
    """No-op implementation when history is disabled."""

    async def record_call(self, entry: CallHistoryEntry) -> bool:
        return True

    async def get_recent(self, limit: int = 100) -> List[CallHistoryEntry]:
        return []

    async def get_entry(self, call_id: str) -> Optional[CallHistoryEntry]:
        return None

    async def amend(self, call_id: str, **changes) -> Optional[CallHistoryEntry]:
        return None

    async def get_aggregate_stats(self) -> CallAnalytics:
        return CallAnalytics()

    async def clear(self) -> None:
        pass


# =============================================================================
# Factory Function
# =============================================================================

def create_history_store(settings: Settings) -> CallHistoryStore:
    """
    Create a call history store based on settings.

    A non-positive history_max_entries disables history.
    """
    if settings.history_max_entries <= 0:
        logger.info("Call history disabled, using no-op history store")
        return NoOpCallHistoryStore()

    return InMemoryCallHistoryStore(max_entries=settings.history_max_entries)
