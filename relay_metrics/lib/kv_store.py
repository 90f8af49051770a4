"""Key-value store for short-lived pipeline state.

Counters, snapshots and time buckets live behind this interface instead of a
process-wide cache. Every stored value carries a version number so callers
can replace it with compare-and-swap; `update` and `increment` are built on
that and are therefore safe against overlapping cycles and concurrent
ingestion calls.

Values must be JSON-serializable.
"""

import copy
import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import uuid4

from relay_metrics.lib.config import get_settings
from relay_metrics.lib.errors import MetricsPipelineError


class ConcurrentUpdateError(MetricsPipelineError):
  """Raised when a read-modify-write keeps losing compare-and-swap races."""

  pass


@dataclass
class VersionedValue:
  value: Any
  version: int


class KeyValueStore(ABC):
  """Versioned key-value store with per-key TTL."""

  @abstractmethod
  def get_versioned(self, key: str) -> Optional[VersionedValue]:
    """Return the value and its version, or None when absent or expired."""

  @abstractmethod
  def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
    """Unconditionally store a value (bumping its version)."""

  @abstractmethod
  def compare_and_swap(
    self,
    key: str,
    expected_version: Optional[int],
    value: Any,
    ttl_seconds: Optional[int] = None,
  ) -> bool:
    """Store `value` only if the key is still at `expected_version`.

    Args:
        key: Cache key
        expected_version: Version read earlier, or None to require the key be absent
        value: New value
        ttl_seconds: Expiry for the new value (None = no expiry)

    Returns:
        True if the value was written, False if another writer got there first
    """

  @abstractmethod
  def compare_and_delete(self, key: str, expected_version: int) -> bool:
    """Delete the key only if it is still at `expected_version`."""

  @abstractmethod
  def delete(self, key: str) -> None:
    """Delete a key if present."""

  def get(self, key: str, default: Any = None) -> Any:
    entry = self.get_versioned(key)
    return entry.value if entry is not None else default

  def update(
    self,
    key: str,
    fn: Callable[[Any], Any],
    ttl_seconds: Optional[int] = None,
    max_attempts: int = 25,
  ) -> Any:
    """Atomically apply `fn` to the current value (None when absent).

    Returns:
        The value that was written

    Raises:
        ConcurrentUpdateError: If every attempt lost a compare-and-swap race
    """
    for _ in range(max_attempts):
      entry = self.get_versioned(key)
      current = copy.deepcopy(entry.value) if entry is not None else None
      new_value = fn(current)
      if self.compare_and_swap(key, entry.version if entry else None, new_value, ttl_seconds):
        return new_value
    raise ConcurrentUpdateError(f'Gave up updating {key!r} after {max_attempts} attempts')

  def increment(self, key: str, amount: float = 1, ttl_seconds: Optional[int] = None) -> float:
    return self.update(key, lambda current: (current or 0) + amount, ttl_seconds)

  def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
    """Take a named lock that expires after `ttl_seconds`.

    Returns:
        An ownership token, or None if the lock is held by someone else
    """
    token = uuid4().hex
    if self.compare_and_swap(f'lock:{name}', None, token, ttl_seconds):
      return token
    return None

  def release_lock(self, name: str, token: str) -> bool:
    """Release a lock previously taken with `acquire_lock`; no-op if it changed hands."""
    entry = self.get_versioned(f'lock:{name}')
    if entry is None or entry.value != token:
      return False
    return self.compare_and_delete(f'lock:{name}', entry.version)


class InMemoryKeyValueStore(KeyValueStore):
  """Thread-safe in-process store.

  Suitable for a single process (API server running the scrape loop) and
  for tests. `time_fn` can be replaced to drive expiry deterministically.
  """

  def __init__(self, time_fn: Callable[[], float] = time.monotonic):
    self._time = time_fn
    self._data: Dict[str, Tuple[Any, int, Optional[float]]] = {}
    self._lock = threading.Lock()
    self._version_seq = 0

  def _live(self, key: str) -> Optional[Tuple[Any, int, Optional[float]]]:
    item = self._data.get(key)
    if item is None:
      return None
    expires_at = item[2]
    if expires_at is not None and expires_at <= self._time():
      del self._data[key]
      return None
    return item

  def _write(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
    self._version_seq += 1
    expires_at = self._time() + ttl_seconds if ttl_seconds is not None else None
    self._data[key] = (copy.deepcopy(value), self._version_seq, expires_at)

  def get_versioned(self, key: str) -> Optional[VersionedValue]:
    with self._lock:
      item = self._live(key)
      if item is None:
        return None
      return VersionedValue(value=copy.deepcopy(item[0]), version=item[1])

  def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
    with self._lock:
      self._write(key, value, ttl_seconds)

  def compare_and_swap(self, key, expected_version, value, ttl_seconds=None) -> bool:
    with self._lock:
      item = self._live(key)
      current_version = item[1] if item is not None else None
      if current_version != expected_version:
        return False
      self._write(key, value, ttl_seconds)
      return True

  def compare_and_delete(self, key: str, expected_version: int) -> bool:
    with self._lock:
      item = self._live(key)
      if item is None or item[1] != expected_version:
        return False
      del self._data[key]
      return True

  def delete(self, key: str) -> None:
    with self._lock:
      self._data.pop(key, None)

  def clear(self) -> None:
    with self._lock:
      self._data.clear()


VERSION_SEQ_KEY = 'kv:version_seq'


class RedisKeyValueStore(KeyValueStore):
  """Redis-backed store shared by the API server and batch scripts.

  Each key holds a JSON envelope ``{"v": version, "d": value}``; conditional
  writes use WATCH/MULTI optimistic transactions. Versions come from one INCR counter shared by all keys,
  so a key that expires and is recreated never reuses a version.
  """

  def __init__(self, redis_client=None, redis_url: Optional[str] = None, prefix: str = ''):
    if redis_client is None:
      import redis as redis_lib

      redis_client = redis_lib.from_url(redis_url or 'redis://localhost:6379/0', decode_responses=True)
    self._redis = redis_client
    self._prefix = prefix

  def _key(self, key: str) -> str:
    return f'{self._prefix}{key}'

  def _next_version(self) -> int:
    return int(self._redis.incr(self._key(VERSION_SEQ_KEY)))

  @staticmethod
  def _decode(raw: Optional[str]) -> Optional[VersionedValue]:
    if raw is None:
      return None
    envelope = json.loads(raw)
    return VersionedValue(value=envelope['d'], version=envelope['v'])

  @staticmethod
  def _encode(value: Any, version: int) -> str:
    return json.dumps({'v': version, 'd': value})

  def get_versioned(self, key: str) -> Optional[VersionedValue]:
    return self._decode(self._redis.get(self._key(key)))

  def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
    self.update(key, lambda _current: value, ttl_seconds)

  def compare_and_swap(self, key, expected_version, value, ttl_seconds=None) -> bool:
    import redis as redis_lib

    full_key = self._key(key)
    with self._redis.pipeline() as pipe:
      try:
        pipe.watch(full_key)
        current = self._decode(pipe.get(full_key))
        current_version = current.version if current is not None else None
        if current_version != expected_version:
          pipe.unwatch()
          return False
        version = self._next_version()
        pipe.multi()
        pipe.set(full_key, self._encode(value, version), ex=ttl_seconds)
        pipe.execute()
        return True
      except redis_lib.WatchError:
        return False

  def compare_and_delete(self, key: str, expected_version: int) -> bool:
    import redis as redis_lib

    full_key = self._key(key)
    with self._redis.pipeline() as pipe:
      try:
        pipe.watch(full_key)
        current = self._decode(pipe.get(full_key))
        if current is None or current.version != expected_version:
          pipe.unwatch()
          return False
        pipe.multi()
        pipe.delete(full_key)
        pipe.execute()
        return True
      except redis_lib.WatchError:
        return False

  def delete(self, key: str) -> None:
    self._redis.delete(self._key(key))


def create_kv_store(backend: str, redis_url: Optional[str] = None, prefix: str = '') -> KeyValueStore:
  """Build the configured store ('memory' or 'redis')."""
  if backend == 'redis':
    return RedisKeyValueStore(redis_url=redis_url, prefix=prefix)
  return InMemoryKeyValueStore()


# Global store instance for the API process (lazy-initialized)
_store: Optional[KeyValueStore] = None


def get_kv_store() -> KeyValueStore:
  """Get or create the store configured by CACHE_BACKEND / REDIS_URL."""
  global _store
  if _store is None:
    settings = get_settings()
    _store = create_kv_store(settings.cache_backend, settings.redis_url, f'{settings.cache_prefix}:')
  return _store
