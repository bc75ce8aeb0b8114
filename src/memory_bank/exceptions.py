# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for the memory bank engine.

Validation outcomes are returned as structured results. These exceptions
cover the conditions that abort a single operation:

- NotFoundError: a memory, backup, archive or deletion record is absent.
- InvalidStateError: the target's current state forbids the operation.
- IntegrityError: checksum mismatch or malformed archive/backup payload.
- PolicyViolationError: a deletion rejected by the critical-importance rule.
- OperationCancelledError: a long-running scan stopped by its cancel signal.

Partial failures are never raised; they are reported as a status value on
the corresponding record.
"""

from typing import Optional


class MemoryBankError(Exception):
    """Base class for all engine errors."""


class NotFoundError(MemoryBankError):
    """Raised when a memory or lifecycle record does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidStateError(MemoryBankError):
    """Raised when an operation is attempted from a forbidden state."""


class IntegrityError(MemoryBankError):
    """Raised when stored content fails checksum or structure checks."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors or [])
        super().__init__(message)


class PolicyViolationError(MemoryBankError):
    """Raised when a deletion is rejected by policy and the caller asked to raise."""

    def __init__(self, memory_id: str, reason: str):
        self.memory_id = memory_id
        self.reason = reason
        super().__init__(f"Deletion of {memory_id} not allowed: {reason}")


class OperationCancelledError(MemoryBankError):
    """Raised when a long-running scan observes its cancel signal.

    Attributes:
        partial: Whatever the scan had produced before it stopped.
    """

    def __init__(self, operation: str, partial: Optional[list] = None):
        self.operation = operation
        self.partial = list(partial or [])
        super().__init__(f"{operation} cancelled after {len(self.partial)} item(s)")
