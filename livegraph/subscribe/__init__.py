"""
Subscription module for livegraph.

Live queries are re-evaluated only when a mutation touches an entity type or
link they depend on, and listeners receive added/removed/updated diffs.
"""

from .manager import (
    ChangeNotification,
    EntityUpdate,
    SubscriptionHandle,
    SubscriptionManager,
    SubscriptionState,
    SubscriptionStats,
    diff_results,
)

__all__ = [
    "SubscriptionManager",
    "SubscriptionHandle",
    "SubscriptionState",
    "SubscriptionStats",
    "ChangeNotification",
    "EntityUpdate",
    "diff_results",
]
