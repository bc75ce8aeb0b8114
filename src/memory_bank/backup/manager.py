# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Backup manager.

Writes full, incremental, differential and snapshot backups of the memory
population to envelope files, verifies them by checksum and structure, and
restores them in full, selective or point-in-time mode.

Every creation walks PENDING -> IN_PROGRESS -> COMPLETED and then
self-validates into VERIFIED or CORRUPTED. An I/O failure or a
cancellation marks the record FAILED and re-raises.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from memory_bank.backup.envelope import (
    BACKUP_FILE_EXTENSION,
    BACKUP_FORMAT_VERSION,
    build_envelope,
    checksums_match,
    compute_checksum,
    decode_envelope,
    encode_envelope,
    parse_memories,
    validate_structure,
)
from memory_bank.config import BackupConfig
from memory_bank.events import EventChannel, MemoryBankEvent
from memory_bank.exceptions import IntegrityError, InvalidStateError, NotFoundError
from memory_bank.protocols import MemoryStore
from memory_bank.schemas import (
    RESTORABLE_BACKUP_STATUSES,
    BackupKind,
    BackupMetadata,
    BackupRecord,
    BackupStatus,
    BackupValidation,
    LifecycleState,
    Memory,
    MemoryQuery,
    RecoveryMode,
    RecoveryOptions,
    RecoveryRecord,
    RecoveryStatus,
    ensure_utc,
    new_operation_id,
    utc_now,
)

logger = logging.getLogger(__name__)

CHECKSUM_MISMATCH = "Checksum mismatch - file may be corrupted"
INVALID_STRUCTURE = "Invalid backup file structure"
RECOVERY_POINT_TAG = "recovery-point"
CHECKSUM_SUFFIX = ".sha256"

# How long a validation stays fresh per verification frequency
VERIFICATION_INTERVALS = {
    "always": timedelta(0),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def checksum_path(path: Path) -> Path:
    """Sidecar file holding the checksum recorded when ``path`` was written."""
    return path.with_name(path.name + CHECKSUM_SUFFIX)


class BackupManager:
    """Creates, verifies, restores and prunes backup files.

    Example:
        >>> manager = BackupManager(store, BackupConfig(backup_directory="/tmp/bk"))
        >>> await manager.initialize()
        >>> full = await manager.create_full(description="nightly")
        >>> inc = await manager.create_incremental(full.id)
        >>> recovery = await manager.restore(inc.id, RecoveryOptions())

    Attributes:
        config: Backup settings.
        directory: Resolved backup directory.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[BackupConfig] = None,
        events: Optional[EventChannel] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.config = config or BackupConfig()
        self.directory = Path(self.config.backup_directory)
        self._events = events or EventChannel()
        self._clock = clock
        self._records: dict[str, BackupRecord] = {}
        self._recoveries: dict[str, RecoveryRecord] = {}
        self._initialized = False

    @property
    def _checksum_key(self) -> Optional[str]:
        if self.config.enable_encryption and self.config.encryption_key:
            return self.config.encryption_key
        return None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Create the backup directory and index backup files already in it.

        Returns:
            Number of backup files indexed.
        """
        if self._initialized:
            return 0
        await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)
        paths = await asyncio.to_thread(
            lambda: sorted(self.directory.glob(f"*{BACKUP_FILE_EXTENSION}"))
        )
        indexed = 0
        for path in paths:
            try:
                record = await self._index_file(path)
            except (OSError, IntegrityError) as e:
                logger.warning(f"Skipping unreadable backup file {path}: {e}")
                continue
            if record.id in self._records:
                continue
            self._records[record.id] = record
            indexed += 1
        self._initialized = True
        logger.info(f"Backup manager initialized at {self.directory} ({indexed} indexed)")
        return indexed

    async def _index_file(self, path: Path) -> BackupRecord:
        """Build a record for a backup file found on disk.

        The checksum comes from the file's sidecar when there is one, so a
        file damaged after it was written is indexed as CORRUPTED. Files
        without a sidecar can only be checked for structure; their checksum
        is taken from the bytes as found.
        """
        data = await asyncio.to_thread(path.read_bytes)
        envelope = decode_envelope(data)
        problems = validate_structure(envelope)
        errors = list(problems)
        actual = compute_checksum(data, self._checksum_key)
        recorded = await asyncio.to_thread(self._read_checksum, path)
        if recorded is None:
            logger.debug(f"No checksum sidecar for {path}; trusting file contents")
            recorded = actual
        elif not checksums_match(recorded, actual):
            errors.append(CHECKSUM_MISMATCH)
        metadata = envelope.get("metadata") if isinstance(envelope.get("metadata"), dict) else {}
        backup_id = metadata.get("backup_id") or path.stem
        created_at = self._clock()
        if not problems:
            created_at = ensure_utc(datetime.fromisoformat(envelope["createdAt"]))
        return BackupRecord(
            id=backup_id,
            kind=BackupKind(envelope["kind"]) if not problems else BackupKind.FULL,
            status=BackupStatus.COMPLETED if not errors else BackupStatus.CORRUPTED,
            created_at=created_at,
            completed_at=created_at,
            file_path=str(path),
            file_size=len(data),
            memory_count=len(envelope.get("memories") or []),
            checksum=recorded,
            base_backup_id=envelope.get("baseBackupId"),
            metadata=BackupMetadata(
                format_version=str(envelope.get("version", BACKUP_FORMAT_VERSION)),
                created_by=metadata.get("created_by", "system"),
                description=metadata.get("description"),
                tags=list(metadata.get("tags") or []),
                encryption_enabled=bool(metadata.get("encryption_enabled", False)),
            ),
            error="; ".join(errors) or None,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_full(
        self,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        created_by: str = "system",
    ) -> BackupRecord:
        """Back up every memory in the store, whatever its lifecycle state."""
        return await self._create(
            BackupKind.FULL, None, lambda _: True, description, tags, created_by
        )

    async def create_incremental(
        self,
        base_backup_id: str,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        created_by: str = "system",
    ) -> BackupRecord:
        """Back up memories modified at or after the base backup's creation.

        Raises:
            NotFoundError: The base backup does not exist.
        """
        base = self._require(base_backup_id)
        since = base.created_at
        return await self._create(
            BackupKind.INCREMENTAL,
            base.id,
            lambda m: m.updated_at >= since,
            description,
            tags,
            created_by,
        )

    async def create_differential(
        self,
        base_backup_id: str,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        created_by: str = "system",
    ) -> BackupRecord:
        """Back up everything modified since the base chain's full backup.

        Raises:
            NotFoundError: The base backup, or a link of its chain, is missing.
        """
        full = self._chain(self._require(base_backup_id))[0]
        since = full.created_at
        return await self._create(
            BackupKind.DIFFERENTIAL,
            full.id,
            lambda m: m.updated_at >= since,
            description,
            tags,
            created_by,
        )

    async def create_recovery_point(self, source_backup_id: Optional[str] = None) -> BackupRecord:
        description = "Recovery point"
        if source_backup_id:
            description = f"Recovery point before restore from {source_backup_id}"
        return await self._create(
            BackupKind.SNAPSHOT,
            None,
            lambda _: True,
            description,
            [RECOVERY_POINT_TAG],
            "recovery-system",
        )

    async def _create(
        self,
        kind: BackupKind,
        base_backup_id: Optional[str],
        include: Callable[[Memory], bool],
        description: Optional[str],
        tags: Optional[list[str]],
        created_by: str,
    ) -> BackupRecord:
        created_at = self._clock()
        record = BackupRecord(
            id=new_operation_id("backup"),
            kind=kind,
            created_at=created_at,
            file_path=str(self._file_path(kind, created_at)),
            base_backup_id=base_backup_id,
            metadata=BackupMetadata(
                format_version=BACKUP_FORMAT_VERSION,
                created_by=created_by,
                description=description,
                tags=list(tags or []),
                encryption_enabled=self._checksum_key is not None,
            ),
        )
        self._records[record.id] = record

        try:
            record.status = BackupStatus.IN_PROGRESS
            memories = [m for m in await self._population() if include(m)]
            record.memory_count = len(memories)

            envelope = build_envelope(
                kind,
                created_at,
                memories,
                {"backup_id": record.id, **record.metadata.model_dump(mode="json")},
                base_backup_id,
            )
            data, raw_size = encode_envelope(envelope, self.config.enable_compression)
            path = Path(record.file_path)
            await asyncio.to_thread(self._write, path, data)

            record.checksum = compute_checksum(data, self._checksum_key)
            await asyncio.to_thread(
                self._write, checksum_path(path), f"{record.checksum}\n".encode("ascii")
            )
            record.file_size = len(data)
            record.compression_ratio = len(data) / raw_size if raw_size else 1.0
            record.status = BackupStatus.COMPLETED
            record.completed_at = self._clock()
        except asyncio.CancelledError:
            await self._fail_backup(record, "cancelled")
            raise
        except Exception as e:
            await self._fail_backup(record, str(e))
            raise

        await self.validate(record.id)
        logger.info(
            f"Created {kind.value} backup {record.id} with {record.memory_count} memories "
            f"({record.status.value})"
        )
        await self._events.emit(MemoryBankEvent.BACKUP_COMPLETED, record.model_copy(deep=True))
        return record.model_copy(deep=True)

    async def _fail_backup(self, record: BackupRecord, error: str) -> None:
        record.status = BackupStatus.FAILED
        record.error = error
        logger.error(f"{record.kind.value} backup {record.id} failed: {error}")
        await self._events.emit(MemoryBankEvent.BACKUP_FAILED, record.model_copy(deep=True))

    async def _population(self) -> list[Memory]:
        result = await self._store.query(MemoryQuery(states=set(LifecycleState)))
        return result.items

    def _file_path(self, kind: BackupKind, created_at: datetime) -> Path:
        timestamp = created_at.strftime("%Y%m%dT%H%M%S%fZ")
        stem = self.config.naming_pattern.format(type=kind.value, timestamp=timestamp)
        path = self.directory / f"{stem}{BACKUP_FILE_EXTENSION}"
        suffix = 1
        while path.exists() or any(r.file_path == str(path) for r in self._records.values()):
            path = self.directory / f"{stem}-{suffix}{BACKUP_FILE_EXTENSION}"
            suffix += 1
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    @staticmethod
    def _read_checksum(path: Path) -> Optional[str]:
        sidecar = checksum_path(path)
        if not sidecar.is_file():
            return None
        value = sidecar.read_text(encoding="ascii", errors="replace").strip()
        return value or None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, backup_id: str) -> BackupValidation:
        """Re-read a backup file and check its checksum and structure.

        Both checks always run; their failures are reported independently.

        Raises:
            NotFoundError: No backup with this id.
        """
        record = self._require(backup_id)
        errors: list[str] = []
        warnings: list[str] = []
        checksum_valid = False
        structure_valid = False

        try:
            data = await asyncio.to_thread(Path(record.file_path).read_bytes)
        except OSError as e:
            errors.append(f"Backup file unreadable: {e}")
        else:
            checksum_valid = checksums_match(
                record.checksum, compute_checksum(data, self._checksum_key)
            )
            if not checksum_valid:
                errors.append(CHECKSUM_MISMATCH)
            try:
                envelope = decode_envelope(data)
            except IntegrityError as e:
                errors.append(INVALID_STRUCTURE)
                errors.extend(e.errors)
            else:
                problems = validate_structure(envelope)
                structure_valid = not problems
                if problems:
                    errors.append(INVALID_STRUCTURE)
                    errors.extend(problems)
                elif len(envelope["memories"]) != record.memory_count:
                    warnings.append(
                        f"Memory count {len(envelope['memories'])} differs from "
                        f"recorded {record.memory_count}"
                    )

        validation = BackupValidation(
            is_valid=checksum_valid and structure_valid,
            validated_at=self._clock(),
            checksum_valid=checksum_valid,
            structure_valid=structure_valid,
            errors=errors,
            warnings=warnings,
        )
        record.validation = validation
        record.status = BackupStatus.VERIFIED if validation.is_valid else BackupStatus.CORRUPTED
        if not validation.is_valid:
            logger.warning(f"Backup {backup_id} failed validation: {errors}")
        await self._events.emit(MemoryBankEvent.BACKUP_VALIDATED, record.model_copy(deep=True))
        return validation.model_copy(deep=True)

    async def validate_due(self) -> dict[str, bool]:
        """Validate restorable backups whose last validation is stale.

        Staleness follows ``verification_frequency``.

        Returns:
            Backup id to validity for every backup validated.
        """
        interval = VERIFICATION_INTERVALS.get(
            self.config.verification_frequency, VERIFICATION_INTERVALS["daily"]
        )
        now = self._clock()
        results: dict[str, bool] = {}
        for record in list(self._records.values()):
            if record.status not in RESTORABLE_BACKUP_STATUSES:
                continue
            if record.validation is not None and now - record.validation.validated_at < interval:
                if interval > timedelta(0):
                    continue
            results[record.id] = (await self.validate(record.id)).is_valid
        return results

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self, backup_id: str, options: Optional[RecoveryOptions] = None
    ) -> RecoveryRecord:
        """Restore memories from a backup.

        Incremental and differential backups are resolved against their
        base chain. Memories whose id already exists are conflicts: they are
        overwritten when ``overwrite_existing`` is set, skipped otherwise.

        Raises:
            NotFoundError: No backup with this id, or a chain link is missing.
            InvalidStateError: The backup is not completed/verified, or a
                point-in-time restore has no target timestamp.
            IntegrityError: A file in the chain fails its checksum.
        """
        options = options or RecoveryOptions()
        record = self._require(backup_id)
        if record.status not in RESTORABLE_BACKUP_STATUSES:
            raise InvalidStateError(
                f"Backup {backup_id} is not in a restorable state: {record.status.value}"
            )
        if options.mode == RecoveryMode.POINT_IN_TIME and options.target_timestamp is None:
            raise InvalidStateError("Point-in-time restore requires a target timestamp")

        recovery = RecoveryRecord(
            id=new_operation_id("recovery"),
            backup_id=backup_id,
            started_at=self._clock(),
            target_timestamp=options.target_timestamp,
            options=options,
        )
        self._recoveries[recovery.id] = recovery

        try:
            recovery.status = RecoveryStatus.IN_PROGRESS
            chain = self._chain(record)
            envelopes = [await self._read_verified(link) for link in chain]

            if options.create_recovery_point:
                point = await self.create_recovery_point(backup_id)
                recovery.recovery_point_id = point.id

            selected, failed = self._select(envelopes, options)
            results = recovery.results
            results.failed_memories.extend(failed)

            for memory in selected:
                await asyncio.sleep(0)
                try:
                    existing = await self._store.get(memory.id)
                    if existing is not None:
                        results.conflicts.append(memory.id)
                        if not options.overwrite_existing:
                            results.warnings.append(
                                f"Memory {memory.id} already exists; skipped"
                            )
                            continue
                    await self._store.store(memory)
                    results.recovered_memories.append(memory.id)
                except Exception as e:
                    logger.warning(f"Failed to restore memory {memory.id}: {e}")
                    results.failed_memories.append(memory.id)

            if options.validate_after_recovery:
                for memory_id in list(results.recovered_memories):
                    if await self._store.get(memory_id) is None:
                        results.recovered_memories.remove(memory_id)
                        results.failed_memories.append(memory_id)
                        results.warnings.append(f"Memory {memory_id} missing after restore")

            recovery.memories_recovered = len(results.recovered_memories)
            recovery.memories_failed = len(results.failed_memories)
            if not results.failed_memories:
                recovery.status = RecoveryStatus.COMPLETED
            elif results.recovered_memories:
                recovery.status = RecoveryStatus.PARTIAL
            else:
                recovery.status = RecoveryStatus.FAILED
            recovery.completed_at = self._clock()
        except asyncio.CancelledError:
            await self._fail_recovery(recovery, "cancelled")
            raise
        except Exception as e:
            await self._fail_recovery(recovery, str(e))
            raise

        logger.info(
            f"Recovery {recovery.id} from {backup_id}: {recovery.status.value} "
            f"({recovery.memories_recovered} recovered, {recovery.memories_failed} failed)"
        )
        await self._events.emit(MemoryBankEvent.RECOVERY_COMPLETED, recovery.model_copy(deep=True))
        return recovery.model_copy(deep=True)

    async def _fail_recovery(self, recovery: RecoveryRecord, error: str) -> None:
        recovery.status = RecoveryStatus.FAILED
        recovery.error = error
        recovery.completed_at = self._clock()
        logger.error(f"Recovery {recovery.id} from {recovery.backup_id} failed: {error}")
        await self._events.emit(MemoryBankEvent.RECOVERY_FAILED, recovery.model_copy(deep=True))

    def _bases(self, record: BackupRecord) -> set[str]:
        """Ids of every known backup ``record`` depends on through its base chain."""
        bases: set[str] = set()
        base_id = record.base_backup_id
        while base_id is not None and base_id not in bases and base_id in self._records:
            bases.add(base_id)
            base_id = self._records[base_id].base_backup_id
        return bases

    def _chain(self, record: BackupRecord) -> list[BackupRecord]:
        """Backups needed to restore ``record``, oldest (the full base) first."""
        chain = [record]
        seen = {record.id}
        current = record
        while current.kind in (BackupKind.INCREMENTAL, BackupKind.DIFFERENTIAL):
            if current.base_backup_id is None:
                raise IntegrityError(f"Backup {current.id} has no base backup", ["missing base"])
            if current.base_backup_id in seen:
                raise IntegrityError(f"Backup chain of {record.id} is cyclic", ["cyclic chain"])
            current = self._require(current.base_backup_id)
            seen.add(current.id)
            chain.append(current)
        chain.reverse()
        return chain

    async def _read_verified(self, record: BackupRecord) -> dict[str, Any]:
        data = await asyncio.to_thread(Path(record.file_path).read_bytes)
        if not checksums_match(record.checksum, compute_checksum(data, self._checksum_key)):
            record.status = BackupStatus.CORRUPTED
            raise IntegrityError(
                f"Backup file integrity check failed for {record.id}", [CHECKSUM_MISMATCH]
            )
        envelope = decode_envelope(data)
        problems = validate_structure(envelope)
        if problems:
            record.status = BackupStatus.CORRUPTED
            raise IntegrityError(f"Backup {record.id} has an invalid structure", problems)
        return envelope

    def _select(
        self, envelopes: list[dict[str, Any]], options: RecoveryOptions
    ) -> tuple[list[Memory], list[str]]:
        """Pick the memory versions to restore according to the recovery mode."""
        versions: dict[str, list[Memory]] = {}
        failed: list[str] = []
        for envelope in envelopes:
            parsed, bad = parse_memories(envelope)
            failed.extend(bad)
            for memory in parsed:
                versions.setdefault(memory.id, []).append(memory)

        selected: list[Memory] = []
        for history in versions.values():
            if options.mode == RecoveryMode.POINT_IN_TIME:
                target = ensure_utc(options.target_timestamp)
                eligible = [
                    m for m in history if m.created_at <= target and m.updated_at <= target
                ]
                if not eligible:
                    continue
                selected.append(max(eligible, key=lambda m: m.updated_at))
                continue

            latest = max(history, key=lambda m: m.updated_at)
            if options.mode == RecoveryMode.SELECTIVE and options.memory_filter is not None:
                if not options.memory_filter.matches(latest):
                    continue
            selected.append(latest)
        return selected, list(dict.fromkeys(failed))

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup(self) -> list[str]:
        """Prune old backups.

        The ``max_backups`` newest completed/verified backups are always
        kept. Older ones past ``retention_days`` are deleted unless a kept
        backup needs them as a base; a file that cannot be deleted is logged
        and its record kept.

        Returns:
            Ids of the backups removed.
        """
        restorable = sorted(
            (r for r in self._records.values() if r.status in RESTORABLE_BACKUP_STATUSES),
            key=lambda r: r.created_at,
            reverse=True,
        )
        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        expired = [
            r for r in restorable[self.config.max_backups :] if r.created_at < cutoff
        ]
        expired_ids = {r.id for r in expired}
        required: set[str] = set()
        for record in restorable:
            if record.id not in expired_ids:
                required.update(self._bases(record))

        removed: list[str] = []
        for record in expired:
            if record.id in required:
                logger.debug(f"Keeping backup {record.id}: base of a retained backup")
                continue
            try:
                await asyncio.to_thread(Path(record.file_path).unlink, missing_ok=True)
                await asyncio.to_thread(
                    checksum_path(Path(record.file_path)).unlink, missing_ok=True
                )
            except OSError as e:
                logger.warning(f"Failed to delete backup file {record.file_path}: {e}")
                required.update(self._bases(record))
                continue
            del self._records[record.id]
            removed.append(record.id)

        if removed:
            logger.info(f"Backup cleanup removed {len(removed)} backup(s)")
        await self._events.emit(MemoryBankEvent.CLEANUP_COMPLETED, {"removed": list(removed)})
        return removed

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _require(self, backup_id: str) -> BackupRecord:
        record = self._records.get(backup_id)
        if record is None:
            raise NotFoundError("Backup", backup_id)
        return record

    def get_record(self, backup_id: str) -> BackupRecord:
        return self._require(backup_id).model_copy(deep=True)

    def records(self) -> list[BackupRecord]:
        """Backup records, newest first."""
        ordered = sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in ordered]

    def recovery_records(self) -> list[RecoveryRecord]:
        return [r.model_copy(deep=True) for r in self._recoveries.values()]

    def latest(self, *kinds: BackupKind) -> Optional[BackupRecord]:
        """Newest restorable backup of the given kinds (any kind when empty)."""
        candidates = [
            r
            for r in self._records.values()
            if r.status in RESTORABLE_BACKUP_STATUSES and (not kinds or r.kind in kinds)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.created_at).model_copy(deep=True)

    def statistics(self) -> dict[str, Any]:
        by_kind = {kind.value: 0 for kind in BackupKind}
        by_status = {status.value: 0 for status in BackupStatus}
        storage_used = 0
        ratios: list[float] = []
        last_backup: Optional[datetime] = None
        for record in self._records.values():
            by_kind[record.kind.value] += 1
            by_status[record.status.value] += 1
            storage_used += record.file_size
            if record.compression_ratio:
                ratios.append(record.compression_ratio)
            if last_backup is None or record.created_at > last_backup:
                last_backup = record.created_at
        return {
            "total_backups": len(self._records),
            "backups_by_kind": by_kind,
            "backups_by_status": by_status,
            "total_storage_used": storage_used,
            "average_compression_ratio": sum(ratios) / len(ratios) if ratios else 0.0,
            "last_backup_at": last_backup,
            "total_recoveries": len(self._recoveries),
        }
