# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the memory-bank command line."""

import json
from pathlib import Path

import pytest
import yaml

from memory_bank import __version__
from memory_bank.backup import BackupManager
from memory_bank.cli import main


@pytest.fixture
async def backup_file(store, backup_config, make_memory, clock):
    await make_memory("cli backup content", tags=["cli"])
    manager = BackupManager(store, backup_config, clock=clock)
    await manager.initialize()
    record = await manager.create_full(description="for the cli")
    return Path(record.file_path), record.checksum


class TestVersion:
    def test_version_flag(self, capsys):
        """--version prints the package version and exits."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        """Running without a command prints usage."""
        assert main([]) == 0
        assert "usage: memory-bank" in capsys.readouterr().out


class TestValidateBackup:
    """Tests for validate-backup."""

    @pytest.mark.asyncio
    async def test_valid_file(self, backup_file, capsys):
        """A file written by BackupManager validates with its checksum."""
        path, checksum = backup_file
        assert main(["validate-backup", str(path), "--checksum", checksum]) == 0
        out = capsys.readouterr().out
        assert "Status:   VALID" in out
        assert checksum in out

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, backup_file, capsys):
        """A wrong expected checksum marks the file invalid."""
        path, _ = backup_file
        assert main(["validate-backup", str(path), "--checksum", "0" * 64]) == 1
        assert "Checksum mismatch" in capsys.readouterr().out

    def test_garbage_file(self, tmp_path, capsys):
        """Bytes that are not a backup envelope are invalid."""
        path = tmp_path / "junk.backup"
        path.write_bytes(b"not a backup")
        assert main(["validate-backup", str(path)]) == 1
        assert "Invalid backup file structure" in capsys.readouterr().out

    def test_structure_errors(self, tmp_path, capsys):
        """A JSON document missing required fields is invalid."""
        path = tmp_path / "partial.backup"
        path.write_text(json.dumps({"version": "1.0"}))
        assert main(["validate-backup", str(path)]) == 1
        assert "Status:   INVALID" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        """An unreadable file exits with 2."""
        assert main(["validate-backup", str(tmp_path / "absent.backup")]) == 2
        assert "cannot read" in capsys.readouterr().err


class TestInspectBackup:
    @pytest.mark.asyncio
    async def test_summary(self, backup_file, capsys):
        """inspect-backup prints a JSON summary of the envelope."""
        path, _ = backup_file
        assert main(["inspect-backup", str(path)]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["kind"] == "full"
        assert summary["memory_count"] == 1
        assert summary["description"] == "for the cli"

    def test_missing_file(self, tmp_path):
        """A missing file exits with 2."""
        assert main(["inspect-backup", str(tmp_path / "absent.backup")]) == 2


class TestShowConfig:
    def test_defaults(self, capsys):
        """show-config prints the default configuration as YAML."""
        assert main(["show-config"]) == 0
        data = yaml.safe_load(capsys.readouterr().out)
        assert data["deletion"]["default_recovery_period_days"] == 30
        assert data["backup"]["max_backups"] == 30

    def test_from_file(self, tmp_path, capsys):
        """Values from --config are reflected in the output."""
        path = tmp_path / "memory-bank.yaml"
        path.write_text(yaml.safe_dump({"backup": {"max_backups": 5}}))
        assert main(["show-config", "--config", str(path)]) == 0
        data = yaml.safe_load(capsys.readouterr().out)
        assert data["backup"]["max_backups"] == 5
