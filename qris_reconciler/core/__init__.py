"""Core reconciliation logic."""
from .matching import Match, find_matches
from .notifications import NotificationFanout
from .reconciliation import ReconcileResult, ReconciliationEngine, WebhookOutcome
from .webhook_dedup import WebhookReplayCache

__all__ = [
    "Match",
    "find_matches",
    "NotificationFanout",
    "ReconcileResult",
    "ReconciliationEngine",
    "WebhookOutcome",
    "WebhookReplayCache",
]
