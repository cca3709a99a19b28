# -*- coding: utf-8 -*-
"""An in-memory cache of hostname chain resolutions"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, NamedTuple, Optional
from collections.abc import Iterable

from expiringdict import ExpiringDict

from zoneaudit._constants import (
    TOPOLOGY_CACHE_MAX_AGE_SECONDS,
    TOPOLOGY_CACHE_MAX_LEN,
)

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


class HostCacheKey(NamedTuple):
    resolver_mode: str
    dns_server: str
    doh_provider: str
    doh_custom_url: str
    max_hops: int
    disable_ptr_lookups: bool
    host: str


class _ReadWriteLock(object):
    """Many concurrent readers or one writer"""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read_locked(self):
        with self._condition:
            while self._writing:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write_locked(self):
        with self._condition:
            while self._writing or self._readers > 0:
                self._condition.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()


class HostResolutionCache(object):
    """
    Caches hostname chain results for a limited time

    Entries older than ``max_age_seconds`` are treated as absent. When more
    than ``max_len`` entries are stored, the oldest are evicted first.
    Reads may run concurrently; writes are exclusive.

    Args:
        max_len (int): The maximum number of entries
        max_age_seconds (float): How long an entry stays valid
    """

    def __init__(
        self,
        max_len: int = TOPOLOGY_CACHE_MAX_LEN,
        max_age_seconds: float = TOPOLOGY_CACHE_MAX_AGE_SECONDS,
    ):
        self.max_len = max_len
        self.max_age_seconds = max_age_seconds
        self._entries = ExpiringDict(max_len=max_len, max_age_seconds=max_age_seconds)
        self._lock = _ReadWriteLock()

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)

    def _get(self, key: HostCacheKey) -> Optional[Any]:
        value, age = self._entries.get(key, with_age=True)
        if age is None or age > self.max_age_seconds:
            return None
        return value

    def get(self, key: HostCacheKey) -> Optional[Any]:
        """Returns a cached value, or ``None`` if it is missing or stale"""
        with self._lock.read_locked():
            return self._get(key)

    def get_many(self, keys: Iterable[HostCacheKey]) -> dict[HostCacheKey, Any]:
        """Returns the fresh cached values for the given keys"""
        hits = {}
        with self._lock.read_locked():
            for key in keys:
                value = self._get(key)
                if value is not None:
                    hits[key] = value
        return hits

    def put_many(self, entries: Iterable[tuple[HostCacheKey, Any]]):
        """Stores a batch of values under one exclusive lock"""
        with self._lock.write_locked():
            count = 0
            for key, value in entries:
                # Re-inserting keeps insertion order equal to write time order
                self._entries.pop(key, None)
                self._entries[key] = value
                count += 1
            now = time.time()
            expired = [
                key
                for key, (_, written) in self._entries.items_with_timestamp()
                if now - written > self.max_age_seconds
            ]
            for key in expired:
                self._entries.pop(key, None)
            logging.debug(
                f"Cached {count} resolutions; evicted {len(expired)} expired entries"
            )

    def clear(self):
        with self._lock.write_locked():
            self._entries.clear()
