"""
DialBridge - Core Package

Contains the domain types and shared infrastructure:
- types: Internal domain types and enums
- events: Status broadcast fan-out
- history_store: Finalized call history and analytics
- exceptions: Error hierarchy
- logging: Structured logging and the system log buffer
"""

from .types import (
    AudioFormat,
    AudioFrame,
    CallAnalytics,
    CallHistoryEntry,
    CallOutcome,
    CallStatus,
    CarrierStatus,
    EndedBy,
    Sentiment,
    ToolCall,
    ToolResult,
)
from .events import StatusBroadcaster, Subscription
from .history_store import (
    CallHistoryStore,
    InMemoryCallHistoryStore,
    create_history_store,
)

__all__ = [
    # Types
    "AudioFormat",
    "AudioFrame",
    "CallStatus",
    "CarrierStatus",
    "EndedBy",
    "CallOutcome",
    "Sentiment",
    "ToolCall",
    "ToolResult",
    # History
    "CallHistoryEntry",
    "CallAnalytics",
    "CallHistoryStore",
    "InMemoryCallHistoryStore",
    "create_history_store",
    # Events
    "StatusBroadcaster",
    "Subscription",
]
