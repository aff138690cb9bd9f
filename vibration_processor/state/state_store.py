"""
State Store
Keyed store for per-record processing state with atomic read-modify-write
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import redis

from ..exceptions import StateStoreError
from ..models import ProcessingState

logger = logging.getLogger(__name__)

# Returns the new state, or None to leave the stored state unchanged
TransitionFn = Callable[[Optional[ProcessingState]], Optional[ProcessingState]]


class StateStore(ABC):
    """Narrow interface the pipeline depends on"""

    @abstractmethod
    def get(self, record_id: str) -> Optional[ProcessingState]:
        """Current state, or None if the record has never been seen"""

    @abstractmethod
    def atomically_transition(
        self, record_id: str, fn: TransitionFn
    ) -> Optional[ProcessingState]:
        """
        Apply ``fn`` to the current state as one atomic step

        ``fn`` may be called more than once under contention and must be
        free of side effects.

        Returns:
            The stored state after the call
        """

    def close(self) -> None:
        pass


class InMemoryStateStore(StateStore):
    """Process-local store with one lock per record id"""

    def __init__(self):
        self._states: Dict[str, ProcessingState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, record_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(record_id)
            if lock is None:
                lock = self._locks[record_id] = threading.Lock()
            return lock

    def get(self, record_id: str) -> Optional[ProcessingState]:
        return self._states.get(record_id)

    def atomically_transition(
        self, record_id: str, fn: TransitionFn
    ) -> Optional[ProcessingState]:
        with self._lock_for(record_id):
            current = self._states.get(record_id)
            new_state = fn(current)
            if new_state is None:
                return current
            self._states[record_id] = new_state
            return new_state

    def __len__(self) -> int:
        return len(self._states)


class RedisStateStore(StateStore):
    """Redis-backed store using WATCH/MULTI optimistic transactions per key"""

    def __init__(self, config: Dict, client: Optional[redis.Redis] = None):
        """
        Initialize Redis state store

        Args:
            config: Configuration dictionary
            client: Pre-built client (default: built from the ``redis`` section)
        """
        redis_config = config.get("redis", {})

        self.host = redis_config.get("host", "localhost")
        self.port = redis_config.get("port", 6379)
        self.db = redis_config.get("db", 0)
        self.key_prefix = redis_config.get("key_prefix", "vibration:state:")
        self.ttl = int(redis_config.get("ttl_seconds", 7 * 24 * 3600))

        if client is None:
            client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=redis_config.get("password"),
                socket_timeout=redis_config.get("socket_timeout_seconds", 5),
                decode_responses=True,
            )
        self.client = client

        logger.info(f"Redis state store configured: {self.host}:{self.port}/{self.db}")

    def _key(self, record_id: str) -> str:
        return f"{self.key_prefix}{record_id}"

    @staticmethod
    def _decode(raw, record_id: Optional[str] = None) -> Optional[ProcessingState]:
        if raw is None:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            return ProcessingState.from_dict(json.loads(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Corrupt state value: {e}", record_id=record_id)

    def _decode_for_update(self, raw, record_id: str) -> Optional[ProcessingState]:
        """A corrupt value is replaced by the next transition"""
        try:
            return self._decode(raw, record_id)
        except StateStoreError as e:
            logger.error(f"Overwriting state of {record_id}: {e}")
            return None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            raise StateStoreError(f"Redis not available: {e}")

    def get(self, record_id: str) -> Optional[ProcessingState]:
        try:
            return self._decode(self.client.get(self._key(record_id)), record_id)
        except redis.RedisError as e:
            raise StateStoreError(f"Error reading state: {e}", record_id=record_id)

    def atomically_transition(
        self, record_id: str, fn: TransitionFn
    ) -> Optional[ProcessingState]:
        key = self._key(record_id)
        outcome: Dict[str, Optional[ProcessingState]] = {}

        def _transition(pipe) -> None:
            current = self._decode_for_update(pipe.get(key), record_id)
            new_state = fn(current)
            outcome["state"] = current if new_state is None else new_state

            pipe.multi()
            if new_state is not None:
                pipe.set(key, json.dumps(new_state.to_dict()), ex=self.ttl)

        try:
            self.client.transaction(_transition, key)
        except redis.RedisError as e:
            raise StateStoreError(f"Error updating state: {e}", record_id=record_id)

        return outcome.get("state")

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.error(f"Error closing Redis client: {e}")
