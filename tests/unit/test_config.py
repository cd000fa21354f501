"""
Unit tests for configuration loading (pgbackup/config.py).
"""

import logging

import pytest

from pgbackup.config import Config, ConfigurationError, DestinationKind


class TestConfigDefaults:
    """Test defaults applied when variables are absent."""

    def test_defaults(self):
        """Test an empty environment yields documented defaults."""
        config = Config.from_env({})

        assert config.postgres.port == 5432
        assert config.local.root == '/backups'
        assert config.local.retention_days == 1
        assert config.s3.enabled is False
        assert config.s3.retention_days == 7
        assert config.s3.prefix == 'postgres-backups'
        assert config.remote.enabled is False
        assert config.remote.retention_days == 30
        assert config.remote.port == 22
        assert config.restore_dir == '/restore'
        assert config.run_on_start is True
        assert config.log_level == 'INFO'

    def test_only_local_enabled_by_default(self):
        """Test local storage is always the first enabled destination."""
        config = Config.from_env({})
        assert [d.kind for d in config.enabled_destinations()] == [DestinationKind.LOCAL]

    def test_values_read_from_mapping(self, env):
        """Test settings are taken from the mapping given."""
        env.update({'PGPORT': '6432', 'LOCAL_RETENTION_DAYS': '3', 'LOG_LEVEL': 'debug'})
        config = Config.from_env(env)

        assert config.postgres.host == 'db.example.com'
        assert config.postgres.port == 6432
        assert config.local.retention_days == 3
        assert config.log_level == 'DEBUG'
        assert config.schedule == '0 2 * * *'

    def test_malformed_integer(self):
        """Test a non-numeric integer setting raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match='PGPORT'):
            Config.from_env({'PGPORT': 'abc'})


class TestDestinationValidation:
    """Test destinations with incomplete settings are disabled."""

    def test_s3_enabled_without_bucket_is_disabled(self, caplog):
        """Test missing S3_BUCKET disables S3 with one logged error."""
        with caplog.at_level(logging.ERROR):
            config = Config.from_env({'S3_ENABLED': 'true', 'S3_ENDPOINT': 'http://minio:9000'})

        assert config.s3.enabled is False
        assert len(config.errors) == 1
        assert 'S3_BUCKET' in caplog.text

    def test_s3_complete_stays_enabled(self):
        """Test complete S3 settings keep S3 enabled."""
        config = Config.from_env({
            'S3_ENABLED': 'yes',
            'S3_BUCKET': 'backups',
            'S3_ENDPOINT': 'http://minio:9000',
            'S3_RETENTION_DAYS': '14',
        })

        assert config.s3.enabled is True
        assert config.s3.retention_days == 14
        assert config.errors == []

    def test_remote_enabled_without_path_is_disabled(self):
        """Test missing RSYNC_PATH disables remote sync."""
        config = Config.from_env({'RSYNC_ENABLED': 'true', 'RSYNC_HOST': 'nas', 'RSYNC_USER': 'backup'})

        assert config.remote.enabled is False
        assert config.enabled_destinations() == [config.local]

    @pytest.mark.parametrize('value,expected', [
        ('true', True), ('TRUE', True), ('1', True), ('on', True),
        ('false', False), ('no', False), ('0', False), ('', False),
    ])
    def test_boolean_parsing(self, value, expected):
        """Test accepted spellings of boolean flags."""
        config = Config.from_env({
            'S3_ENABLED': value,
            'S3_BUCKET': 'b',
            'S3_ENDPOINT': 'http://e',
        })
        assert config.s3.enabled is expected


class TestRestoreParameters:
    """Test RESTORE_* handling."""

    def test_automated_restore_requires_all_three(self):
        """Test automated mode needs source, folder and type."""
        assert Config.from_env({'RESTORE_SOURCE': 'local', 'RESTORE_FOLDER': '20250101_000000'}).automated_restore is False
        assert Config.from_env({
            'RESTORE_SOURCE': 'local',
            'RESTORE_FOLDER': '20250101_000000',
            'RESTORE_TYPE': 'cluster',
        }).automated_restore is True

    def test_destination_kind_parse(self):
        """Test source names parse case-insensitively and unknown ones fail."""
        assert DestinationKind.parse('S3') is DestinationKind.S3
        with pytest.raises(ConfigurationError):
            DestinationKind.parse('ftp')
