# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for YAML configuration loading."""

import yaml

from memory_bank.config import (
    EngineConfig,
    config_from_dict,
    config_to_dict,
    load_config,
)
from memory_bank.schemas import ArchiveTier


class TestLoadConfig:
    """Tests for load_config and config_from_dict."""

    def test_defaults(self):
        """No path means built-in defaults."""
        config = load_config()
        assert config.deletion.default_recovery_period_days == 30
        assert config.deletion.critical_importance_threshold == 0.8
        assert config.archival.default_tier == ArchiveTier.WARM
        assert config.backup.schedule == "0 2 * * *"
        assert config.backup.max_backups == 30
        assert config.retrieval.semantic_weight == 0.40
        assert len(config.archival.policies) == 4

    def test_missing_file_falls_back(self, tmp_path):
        """A path that does not exist yields defaults."""
        assert load_config(tmp_path / "absent.yaml") == EngineConfig()

    def test_invalid_yaml_falls_back(self, tmp_path):
        """Unparseable YAML yields defaults."""
        path = tmp_path / "broken.yaml"
        path.write_text("deletion: [unclosed")
        assert load_config(path) == EngineConfig()

    def test_reads_yaml_sections(self, tmp_path):
        """Values from the file override defaults per section."""
        path = tmp_path / "memory-bank.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "deletion": {"default_recovery_period_days": 7},
                    "archival": {
                        "default_tier": "cold",
                        "policies": [
                            {"name": "scratch", "target_tier": "hot", "archive_tags": ["tmp"]}
                        ],
                    },
                    "backup": {"backup_directory": "/var/backups/mb", "incremental_frequency_hours": 1.5},
                    "retrieval": {"recency_decay_days": 14},
                }
            )
        )
        config = load_config(path)
        assert config.deletion.default_recovery_period_days == 7
        assert config.archival.default_tier == ArchiveTier.COLD
        assert [p.name for p in config.archival.policies] == ["scratch"]
        assert config.archival.policies[0].target_tier == ArchiveTier.HOT
        assert config.backup.backup_directory == "/var/backups/mb"
        assert config.backup.incremental_frequency_hours == 1.5
        assert config.retrieval.recency_decay_days == 14

    def test_bad_values_are_replaced_or_clamped(self):
        """Wrong types keep the default, out-of-range numbers are clamped."""
        config = config_from_dict(
            {
                "deletion": {
                    "critical_importance_threshold": 3.0,
                    "auto_cleanup_orphans": "yes",
                    "max_deletion_records": "many",
                    "unknown_key": 1,
                },
                "backup": {"verification_frequency": "hourly", "max_backups": 0},
                "archival": {"default_tier": "lukewarm"},
            }
        )
        assert config.deletion.critical_importance_threshold == 1.0
        assert config.deletion.auto_cleanup_orphans is True
        assert config.deletion.max_deletion_records == 1000
        assert config.backup.verification_frequency == "daily"
        assert config.backup.max_backups == 1
        assert config.archival.default_tier == ArchiveTier.WARM

    def test_invalid_policies_are_skipped(self):
        """Policies without a name or with an unknown tier are dropped."""
        config = config_from_dict(
            {
                "archival": {
                    "policies": [
                        {"name": "ok", "max_age_days": 10},
                        {"target_tier": "hot"},
                        {"name": "bad-tier", "target_tier": "lava"},
                        "not-a-mapping",
                    ]
                }
            }
        )
        assert [p.name for p in config.archival.policies] == ["ok"]

    def test_non_mapping_document(self):
        """A YAML document that is not a mapping yields defaults."""
        assert config_from_dict(["a", "b"]) == EngineConfig()


class TestConfigToDict:
    """Tests for config serialization."""

    def test_masks_encryption_key(self):
        """The encryption key is never printed."""
        config = EngineConfig()
        config.backup.encryption_key = "s3cret"
        data = config_to_dict(config)
        assert data["backup"]["encryption_key"] == "***"
        assert data["archival"]["default_tier"] == "warm"

    def test_round_trips_through_yaml(self):
        """Dumped config loads back to an equal config."""
        config = EngineConfig()
        reloaded = config_from_dict(yaml.safe_load(yaml.safe_dump(config_to_dict(config))))
        assert reloaded == config
