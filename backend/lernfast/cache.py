"""Time-based read cache with tag invalidation for lesson and profile queries."""

from __future__ import annotations
import functools
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class TaggedCache:
	"""Thread-safe TTL cache whose entries can be dropped by tag."""

	def __init__(self, clock: Callable[[], float] = time.monotonic):
		self._entries: Dict[Hashable, Tuple[float, Any]] = {}
		self._tags: Dict[str, Set[Hashable]] = {}
		self._clock = clock
		self._lock = Lock()

	def get(self, key: Hashable) -> Tuple[bool, Any]:
		with self._lock:
			entry = self._entries.get(key)
			if entry is None:
				return False, None
			expires_at, value = entry
			if expires_at <= self._clock():
				self._entries.pop(key, None)
				return False, None
			return True, value

	def set(self, key: Hashable, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
		with self._lock:
			self._entries[key] = (self._clock() + ttl, value)
			for tag in tags:
				self._tags.setdefault(tag, set()).add(key)

	def revalidate_tag(self, tag: str) -> int:
		"""Drop every entry stored under ``tag``; returns how many were dropped."""
		with self._lock:
			keys = self._tags.pop(tag, set())
			dropped = 0
			for key in keys:
				if self._entries.pop(key, None) is not None:
					dropped += 1
			return dropped

	def clear(self) -> None:
		with self._lock:
			self._entries.clear()
			self._tags.clear()


query_cache = TaggedCache()


def cached(
	name: str,
	*,
	ttl: float,
	tags: Iterable[str],
	key_args: Optional[Callable[..., Tuple]] = None,
	extra_tags: Optional[Callable[..., Iterable[str]]] = None,
):
	"""Cache a query function's result under ``name`` plus its key arguments.

	``key_args`` picks the cache-key part out of the call arguments; by default
	every positional argument except the first (the DB session) is used.
	``extra_tags`` derives per-call tags such as ``lesson:<id>``.
	"""
	static_tags = tuple(tags)

	def decorator(fn):
		@functools.wraps(fn)
		def wrapper(*args, **kwargs):
			parts = key_args(*args, **kwargs) if key_args else tuple(args[1:])
			key = (name,) + tuple(parts)
			hit, value = query_cache.get(key)
			if hit:
				return value
			value = fn(*args, **kwargs)
			if value is not None:
				entry_tags = static_tags + tuple(extra_tags(*args, **kwargs)) if extra_tags else static_tags
				query_cache.set(key, value, ttl, entry_tags)
			return value
		return wrapper
	return decorator


def revalidate_tag(tag: str) -> int:
	return query_cache.revalidate_tag(tag)


def invalidate_lesson_cache(lesson_id: str) -> None:
	# Dashboard list and lesson detail both live under the "lessons" tag
	dropped = revalidate_tag("lessons") + revalidate_tag(f"lesson:{lesson_id}")
	logger.debug("Invalidated %d cached lesson queries after change to %s", dropped, lesson_id)
