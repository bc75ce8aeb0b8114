# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Backup file format.

A backup file holds one self-describing JSON envelope::

    {
        "version": "1.0.0",
        "kind": "full" | "incremental" | "differential" | "snapshot",
        "createdAt": "<ISO-8601>",
        "baseBackupId": "<id>",        # incremental/differential only
        "memories": [...],
        "metadata": {...}
    }

The JSON is written with sorted keys and compact separators and, when
compression is on, gzipped with a zero mtime. Identical content therefore
always produces identical bytes and an identical checksum.
"""

import gzip
import hashlib
import hmac
import json
import zlib
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from memory_bank.exceptions import IntegrityError
from memory_bank.schemas import BackupKind, Memory

BACKUP_FORMAT_VERSION = "1.0.0"
BACKUP_FILE_EXTENSION = ".backup"
GZIP_MAGIC = b"\x1f\x8b"

REQUIRED_STRING_FIELDS = ("version", "kind", "createdAt")


def build_envelope(
    kind: BackupKind,
    created_at: datetime,
    memories: list[Memory],
    metadata: dict[str, Any],
    base_backup_id: Optional[str] = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "version": BACKUP_FORMAT_VERSION,
        "kind": BackupKind(kind).value,
        "createdAt": created_at.isoformat(),
        "memories": [memory.model_dump(mode="json") for memory in memories],
        "metadata": metadata,
    }
    if base_backup_id is not None:
        envelope["baseBackupId"] = base_backup_id
    return envelope


def encode_envelope(envelope: dict[str, Any], compress: bool) -> tuple[bytes, int]:
    """Serialize an envelope to file bytes.

    Returns:
        (file bytes, uncompressed JSON size)
    """
    raw = json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")
    if compress:
        return gzip.compress(raw, mtime=0), len(raw)
    return raw, len(raw)


def decode_envelope(data: bytes) -> dict[str, Any]:
    """Parse file bytes back into an envelope mapping.

    Raises:
        IntegrityError: The bytes are not a readable JSON object.
    """
    try:
        if data[:2] == GZIP_MAGIC:
            data = gzip.decompress(data)
        envelope = json.loads(data.decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
        raise IntegrityError("Backup file is not a readable envelope", [str(e)])
    if not isinstance(envelope, dict):
        raise IntegrityError("Backup envelope is not an object", ["envelope is not an object"])
    return envelope


def compute_checksum(data: bytes, key: Optional[str] = None) -> str:
    """SHA-256 of the file bytes, HMAC-SHA256 when a key is configured."""
    if key:
        return hmac.new(key.encode("utf-8"), data, hashlib.sha256).hexdigest()
    return hashlib.sha256(data).hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected, actual)


def validate_structure(envelope: dict[str, Any]) -> list[str]:
    """Structural problems of an envelope; empty when well-formed."""
    errors: list[str] = []
    for name in REQUIRED_STRING_FIELDS:
        if not isinstance(envelope.get(name), str):
            errors.append(f"Field '{name}' is missing or not a string")

    kind = envelope.get("kind")
    if isinstance(kind, str) and kind not in {k.value for k in BackupKind}:
        errors.append(f"Unknown backup kind '{kind}'")

    created_at = envelope.get("createdAt")
    if isinstance(created_at, str):
        try:
            datetime.fromisoformat(created_at)
        except ValueError:
            errors.append(f"Field 'createdAt' is not an ISO timestamp: {created_at}")

    if "baseBackupId" in envelope and not isinstance(envelope["baseBackupId"], str):
        errors.append("Field 'baseBackupId' is not a string")

    memories = envelope.get("memories")
    if not isinstance(memories, list):
        errors.append("Field 'memories' is missing or not a list")
    elif not all(isinstance(entry, dict) for entry in memories):
        errors.append("Field 'memories' contains non-object entries")

    if "metadata" in envelope and not isinstance(envelope["metadata"], dict):
        errors.append("Field 'metadata' is not an object")

    return errors


def parse_memories(envelope: dict[str, Any]) -> tuple[list[Memory], list[str]]:
    """Validate the memory array.

    Returns:
        (parsed memories, ids or positions of entries that failed validation)
    """
    parsed: list[Memory] = []
    failed: list[str] = []
    for index, entry in enumerate(envelope.get("memories") or []):
        label = str(entry.get("id")) if isinstance(entry, dict) and entry.get("id") else f"#{index}"
        try:
            parsed.append(Memory.model_validate(entry))
        except ValidationError:
            failed.append(label)
    return parsed, failed


def summarize(envelope: dict[str, Any]) -> dict[str, Any]:
    """Short description of an envelope for display."""
    memories = envelope.get("memories")
    metadata = envelope.get("metadata") if isinstance(envelope.get("metadata"), dict) else {}
    return {
        "backup_id": metadata.get("backup_id"),
        "version": envelope.get("version"),
        "kind": envelope.get("kind"),
        "created_at": envelope.get("createdAt"),
        "base_backup_id": envelope.get("baseBackupId"),
        "memory_count": len(memories) if isinstance(memories, list) else None,
        "description": metadata.get("description"),
        "tags": metadata.get("tags", []),
    }
