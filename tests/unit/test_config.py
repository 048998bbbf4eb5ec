"""
Unit tests for configuration loading (pvebackup/config.py).
"""

import dataclasses

import pytest

from pvebackup.config import RunConfig, load_config, parse_size
from pvebackup.models import BackupType, CloudBackendKind, Codec, Tier, UploadMode


class TestParseSize:
    """Test parse_size()."""

    @pytest.mark.parametrize('value,expected', [
        ('1048576', 1048576),
        ('50M', 50 * 1024 * 1024),
        ('10MiB', 10 * 1024 * 1024),
        ('1.5G', int(1.5 * 1024 ** 3)),
        ('4k', 4096),
    ])
    def test_valid(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize('value', ['', 'lots', '10X'])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_size(value)


class TestLoadConfig:
    """Test load_config()."""

    def test_defaults(self, tmp_path):
        config = load_config('production', env_file=str(tmp_path / 'missing.env'),
                             environ={'BASE_DIR': str(tmp_path)})

        assert config.local_backup_path == str(tmp_path / 'backup')
        assert config.lock_path == str(tmp_path / 'lock')
        assert config.compression_type is Codec.ZSTD
        assert config.cloud_enabled is False
        assert config.proxmox_type is None
        assert config.max_local_logs == 15
        assert config.backup_system_info is True

    def test_env_file_and_environment(self, tmp_path):
        env_file = tmp_path / 'backup.env'
        env_file.write_text(
            '# backup settings\n'
            'LOCAL_BACKUP_PATH=/srv/backup\n'
            'ENABLE_CLOUD_BACKUP=true\n'
            'RCLONE_REMOTE=gdrive\n'
            'CLOUD_UPLOAD_MODE=parallel\n'
            'BACKUP_BLACKLIST="/etc/ssl/private /root/.cache"\n'
            'MAX_LOCAL_BACKUPS=5\n'
            'BACKUP_SYSTEM_INFO=false\n'
        )

        config = load_config('production', env_file=str(env_file),
                             environ={'MAX_LOCAL_BACKUPS': '7', 'PROXMOX_TYPE': 'PBS'})

        assert config.local_backup_path == '/srv/backup'
        assert config.cloud_enabled is True
        assert config.cloud_remote == 'gdrive'
        assert config.upload_mode is UploadMode.PARALLEL
        assert config.backup_blacklist == ('/etc/ssl/private', '/root/.cache')
        assert config.max_local_backups == 7
        assert config.max_local_logs == 7
        assert config.proxmox_type is BackupType.PBS
        assert config.backup_system_info is False

    @pytest.mark.parametrize('name,value,field,expected', [
        ('COMPRESSION_TYPE', 'rar', 'compression_type', Codec.ZSTD),
        ('CLOUD_BACKEND', 'ftp', 'cloud_backend', CloudBackendKind.RCLONE),
        ('MAX_CLOUD_BACKUPS', 'many', 'max_cloud_backups', 15),
        ('CHUNK_SIZE', 'huge', 'chunk_size', 10 * 1024 * 1024),
        ('RCLONE_RETRIES', '0', 'rclone_retries', 1),
    ])
    def test_invalid_values_fall_back(self, tmp_path, name, value, field, expected):
        config = load_config('production', env_file=str(tmp_path / 'none.env'), environ={name: value})

        assert getattr(config, field) == expected

    def test_profile_from_environment(self, tmp_path):
        config = load_config(env_file=str(tmp_path / 'none.env'), environ={'PVEBACKUP_ENV': 'development'})

        assert config.config_name == 'development'
        assert config.debug is True

    def test_overrides(self, tmp_path):
        config = load_config('production', env_file=str(tmp_path / 'none.env'), environ={},
                             compression_type=Codec.XZ)

        assert config.compression_type is Codec.XZ

    def test_rclone_flags_are_split(self, tmp_path):
        config = load_config('production', env_file=str(tmp_path / 'none.env'),
                             environ={'RCLONE_FLAGS': '--transfers 4 --checkers=8'})

        assert config.rclone_flags == ('--transfers', '4', '--checkers=8')


class TestRunConfig:
    """Test RunConfig helpers."""

    def test_frozen(self):
        config = RunConfig()

        with pytest.raises(dataclasses.FrozenInstanceError):
            config.cloud_enabled = True

    def test_targets_order_and_addresses(self):
        config = RunConfig(cloud_enabled=True, cloud_remote='gdrive', secondary_enabled=True,
                           secondary_backup_path='/mnt/nas/backup')

        targets = config.targets()

        assert [t.tier for t in targets] == [Tier.LOCAL, Tier.SECONDARY, Tier.CLOUD]
        assert targets[2].address == 'gdrive:/proxmox-backup/backup'
        assert targets[2].log_address == 'gdrive:/proxmox-backup/log'
        assert targets[1].log_address is None

    @pytest.mark.parametrize('overrides', [
        {'secondary_enabled': True},
        {'cloud_enabled': True},
    ])
    def test_tier_without_address_is_disabled(self, overrides):
        config = RunConfig(**overrides)

        assert not config.target(Tier.SECONDARY).enabled
        assert not config.target(Tier.CLOUD).enabled
