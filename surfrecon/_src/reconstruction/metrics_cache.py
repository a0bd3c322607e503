# SPDX-FileCopyrightText: Copyright (c) 2025 The Newton Developers
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Thread-safe, append-only store of per-artifact metric records."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class MetricsEntry:
    """One recorded measurement."""

    name: str
    value: Any
    timestamp: float = field(default_factory=time.time)


class MetricsCache:
    """Append-only metrics keyed by artifact id.

    Writers from any thread append under a single lock. Readers take a
    :meth:`snapshot`, an immutable copy that later writes do not affect.
    After :meth:`close` the cache rejects writes.

    Example:
        >>> with MetricsCache() as cache:
        ...     cache.record("scan-1", "noise_level", 0.02)
        ...     snap = cache.snapshot()
        >>> snap["scan-1"][0].value
        0.02
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, list[MetricsEntry]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def record(self, artifact_id: str, name: str, value: Any) -> MetricsEntry:
        """Append one measurement for ``artifact_id``.

        Raises:
            RuntimeError: If the cache is closed.
        """
        entry = MetricsEntry(name, value)
        with self._lock:
            if self._closed:
                raise RuntimeError("metrics cache is closed")
            self._entries.setdefault(artifact_id, []).append(entry)
        return entry

    def record_many(self, artifact_id: str, values: dict[str, Any]):
        """Append several measurements atomically."""
        entries = [MetricsEntry(name, value) for name, value in values.items()]
        with self._lock:
            if self._closed:
                raise RuntimeError("metrics cache is closed")
            self._entries.setdefault(artifact_id, []).extend(entries)

    def snapshot(self) -> MappingProxyType:
        """Read-only mapping of artifact id to a tuple of its entries."""
        with self._lock:
            copy = {key: tuple(entries) for key, entries in self._entries.items()}
        return MappingProxyType(copy)

    def latest(self, artifact_id: str, name: str, default: Any = None) -> Any:
        """Most recent value of ``name`` for ``artifact_id``."""
        for entry in reversed(self.snapshot().get(artifact_id, ())):
            if entry.name == name:
                return entry.value
        return default

    def close(self):
        with self._lock:
            self._closed = True

    def __enter__(self) -> MetricsCache:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
