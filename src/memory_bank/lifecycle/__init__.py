# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Memory lifecycle management: deletion, archival policies and tiers.

The managers live in ``memory_bank.lifecycle.deletion`` and
``memory_bank.lifecycle.archival``; this package root only exposes the
policy and locking primitives so that ``memory_bank.config`` can import
them without pulling in the managers.
"""

from memory_bank.lifecycle.locks import KeyedLock
from memory_bank.lifecycle.policies import ArchivalPolicy, default_policies, is_expired

__all__ = [
    "ArchivalPolicy",
    "KeyedLock",
    "default_policies",
    "is_expired",
]
