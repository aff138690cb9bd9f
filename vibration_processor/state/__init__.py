"""
Processing state module
"""

from .retry_policy import RetryPolicy
from .state_store import InMemoryStateStore, RedisStateStore, StateStore
from .state_tracker import Admission, StateTracker

__all__ = [
    "RetryPolicy",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "StateTracker",
    "Admission",
]
