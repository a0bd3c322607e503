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

"""GPU-friendly hash set mapping uint64 keys to stable slot indices.

The table stores only keys. Callers keep their payload in their own arrays,
indexed by the slot returned from :func:`hashtable_find_or_insert`, and update
it with atomics. This is how the reconstruction code welds marching-cubes
vertices shared by neighboring cells and how the point hash grid maps
Morton-encoded cell keys to cell ranges.

The table supports:
- Thread-safe find-or-insert from any number of kernel threads
- Read-only lookups returning the slot or -1
- A compact list of claimed slots in insertion order (``active_slots``)
- Open addressing with linear probing for collision resolution

Example usage:

    table = HashTable(capacity=1024, device="cpu")

    @wp.kernel
    def insert_kernel(
        keys_in: wp.array(dtype=wp.uint64),
        keys: wp.array(dtype=wp.uint64),
        active_slots: wp.array(dtype=wp.int32),
        slot_out: wp.array(dtype=wp.int32),
    ):
        tid = wp.tid()
        slot_out[tid] = hashtable_find_or_insert(keys_in[tid], keys, active_slots)

    wp.launch(insert_kernel, dim=n, inputs=[keys_in, table.keys, table.active_slots, slot_out])
    num_unique = table.get_active_count()
"""

from __future__ import annotations

import numpy as np
import warp as wp

# Sentinel value for empty slots (max uint64 value, unlikely to be a valid key)
_HASHTABLE_EMPTY_KEY_VALUE = 0xFFFFFFFFFFFFFFFF
HASHTABLE_EMPTY_KEY = wp.constant(wp.uint64(_HASHTABLE_EMPTY_KEY_VALUE))


def _next_power_of_two(n: int) -> int:
    """Round up to the next power of two.

    Args:
        n: The input value (must be positive)

    Returns:
        The smallest power of two >= n
    """
    if n <= 0:
        return 1
    n -= 1
    n |= n >> 1
    n |= n >> 2
    n |= n >> 4
    n |= n >> 8
    n |= n >> 16
    n |= n >> 32
    return n + 1


@wp.func
def _hashtable_hash(key: wp.uint64, capacity_mask: int) -> int:
    """Mix a key into a slot index in [0, capacity).

    Uses the 64-bit finalizer from MurmurHash3 so that Morton codes of
    neighboring cells, which differ only in low bits, spread across the table.
    """
    h = key
    h = h ^ (h >> wp.uint64(33))
    h = h * wp.uint64(0xFF51AFD7ED558CCD)
    h = h ^ (h >> wp.uint64(33))
    h = h * wp.uint64(0xC4CEB9FE1A85EC53)
    h = h ^ (h >> wp.uint64(33))
    return int(h) & capacity_mask


@wp.func
def hashtable_find_or_insert(
    key: wp.uint64,
    keys: wp.array(dtype=wp.uint64),
    active_slots: wp.array(dtype=wp.int32),
) -> int:
    """Return the slot of ``key``, claiming a new slot if the key is absent.

    Thread-safe: concurrent callers with the same key all receive the same slot.
    The first caller to claim a slot appends it to ``active_slots``; the entry at
    ``active_slots[capacity]`` holds the number of claimed slots.

    Args:
        key: The uint64 key (must not equal the empty sentinel)
        keys: The hash table keys array (length must be power of two)
        active_slots: Array of size (capacity + 1) tracking claimed slots

    Returns:
        The slot index, or -1 if the table is full
    """
    capacity = keys.shape[0]
    capacity_mask = capacity - 1
    idx = _hashtable_hash(key, capacity_mask)

    for _i in range(capacity):
        old_key = wp.atomic_cas(keys, idx, HASHTABLE_EMPTY_KEY, key)

        if old_key == HASHTABLE_EMPTY_KEY:
            active_idx = wp.atomic_add(active_slots, capacity, 1)
            if active_idx < capacity:
                active_slots[active_idx] = idx
            return idx
        elif old_key == key:
            return idx

        idx = (idx + 1) & capacity_mask

    return -1


@wp.func
def hashtable_find(
    key: wp.uint64,
    keys: wp.array(dtype=wp.uint64),
) -> int:
    """Look up the slot of ``key`` without inserting.

    Returns:
        The slot index, or -1 if the key is not in the table
    """
    capacity = keys.shape[0]
    capacity_mask = capacity - 1
    idx = _hashtable_hash(key, capacity_mask)

    for _i in range(capacity):
        stored_key = keys[idx]

        if stored_key == key:
            return idx

        if stored_key == HASHTABLE_EMPTY_KEY:
            return -1

        idx = (idx + 1) & capacity_mask

    return -1


@wp.kernel
def _hashtable_batch_insert_kernel(
    input_keys: wp.array(dtype=wp.uint64),
    keys: wp.array(dtype=wp.uint64),
    active_slots: wp.array(dtype=wp.int32),
    out_slots: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    out_slots[tid] = hashtable_find_or_insert(input_keys[tid], keys, active_slots)


@wp.kernel
def _hashtable_batch_find_kernel(
    input_keys: wp.array(dtype=wp.uint64),
    keys: wp.array(dtype=wp.uint64),
    out_slots: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    out_slots[tid] = hashtable_find(input_keys[tid], keys)


class HashTable:
    """A GPU-friendly hash set handing out one stable slot per unique key.

    The capacity is rounded up to the next power of two for efficient modulo via
    bitwise AND. Size it at roughly twice the expected number of unique keys.

    Attributes:
        capacity: The maximum number of keys the table can hold (power of two)
        keys: Warp array storing the keys
        active_slots: Compact array of claimed slot indices. Size is (capacity + 1).
                      active_slots[0:count] holds slots in claim order and
                      active_slots[capacity] is the count.
        device: The device where the table is allocated
    """

    def __init__(self, capacity: int, device: str | None = None):
        capacity = int(capacity)
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self.capacity = _next_power_of_two(capacity)
        self.device = device

        self.keys = wp.zeros(self.capacity, dtype=wp.uint64, device=device)
        self.active_slots = wp.zeros(self.capacity + 1, dtype=wp.int32, device=device)

        self.clear()

    def clear(self):
        """Remove all keys."""
        self.keys.fill_(_HASHTABLE_EMPTY_KEY_VALUE)
        self.active_slots.zero_()

    def get_active_count(self) -> int:
        """Number of claimed slots (unique keys inserted so far)."""
        return min(int(self.active_slots.numpy()[self.capacity]), self.capacity)

    def get_active_slots(self) -> np.ndarray:
        """Claimed slot indices in claim order."""
        count = self.get_active_count()
        return self.active_slots.numpy()[:count].copy()

    def get_keys(self) -> np.ndarray:
        """Keys of all claimed slots, in claim order."""
        return self.keys.numpy()[self.get_active_slots()]

    def insert(self, keys: wp.array) -> wp.array:
        """Find-or-insert a batch of keys and return their slots.

        Args:
            keys: Array of uint64 keys

        Returns:
            int32 array with one slot per input key (-1 where the table overflowed)
        """
        n = keys.shape[0]
        out_slots = wp.empty(n, dtype=wp.int32, device=self.device)
        if n == 0:
            return out_slots
        wp.launch(
            _hashtable_batch_insert_kernel,
            dim=n,
            inputs=[keys, self.keys, self.active_slots, out_slots],
            device=self.device,
        )
        return out_slots

    def find(self, keys: wp.array) -> wp.array:
        """Look up a batch of keys and return their slots (-1 when absent)."""
        n = keys.shape[0]
        out_slots = wp.empty(n, dtype=wp.int32, device=self.device)
        if n == 0:
            return out_slots
        wp.launch(
            _hashtable_batch_find_kernel,
            dim=n,
            inputs=[keys, self.keys, out_slots],
            device=self.device,
        )
        return out_slots
