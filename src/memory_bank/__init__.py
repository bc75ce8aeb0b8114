# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Memory Bank - memory lifecycle and retrieval engine.

Scores and ranks stored memories against a query context and governs
their deletion, archival and backup/recovery lifecycle.

Usage:
    from memory_bank import MemoryBank, load_config

    async with MemoryBank(load_config("memory-bank.yaml")) as bank:
        memory = await bank.create_memory({"content": "Use tabs", "tags": ["style"]})
"""

__version__ = "0.1.0"

from memory_bank.bank import MemoryBank
from memory_bank.config import EngineConfig, load_config
from memory_bank.events import EventChannel, MemoryBankEvent
from memory_bank.exceptions import (
    IntegrityError,
    InvalidStateError,
    MemoryBankError,
    NotFoundError,
    OperationCancelledError,
    PolicyViolationError,
)
from memory_bank.schemas import Memory, MemoryQuery, MemoryType

__all__ = [
    "__version__",
    "EngineConfig",
    "EventChannel",
    "IntegrityError",
    "InvalidStateError",
    "Memory",
    "MemoryBank",
    "MemoryBankError",
    "MemoryBankEvent",
    "MemoryQuery",
    "MemoryType",
    "NotFoundError",
    "OperationCancelledError",
    "PolicyViolationError",
    "load_config",
]
