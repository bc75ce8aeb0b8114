# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Memory store implementations.

Provides the local MemoryStore and the dictionary-backed repository it
stores rows in.
"""

from memory_bank.providers.local import LocalMemoryStore
from memory_bank.providers.repository import InMemoryRepository

__all__ = [
    "InMemoryRepository",
    "LocalMemoryStore",
]
