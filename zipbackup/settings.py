"""
Load and save the persisted settings file.

The settings file is YAML. Saving over an existing file first copies the
previous version to `<file>.bak`.
"""

import logging
import os
import shutil
from typing import Optional

import yaml

from zipbackup.models import BackupJob, BackupSettings, EmailSettings, RemoteSettings


logger = logging.getLogger(__name__)

BACKUP_SUFFIX = '.bak'


class SettingsError(Exception):
    """Raised when the settings file is missing or cannot be read."""
    pass


def default_settings() -> BackupSettings:
    """
    Build the settings written when no settings file exists yet.

    Returns:
        BackupSettings with two example jobs and remote sync/e-mail disabled
    """
    return BackupSettings(
        archiver_path='7za',
        compression_level=9,
        encrypt_headers=False,
        local_backup_dir='./backups',
        jobs=[
            BackupJob(name='Logs', source_paths=['/var/log'], max_full_age_days=20, retain_incremental_count=3),
            BackupJob(name='Documents', source_paths=['~/Documents'], max_full_age_days=20, retain_incremental_count=3),
        ],
        remote=RemoteSettings(address='ftp.example.com', port=21, username='ftpuser', verify_sizes=True),
        email=EmailSettings(server='smtp.gmail.com', port=587, recipient='backup@example.com',
                            username='donotreply@example.com'),
    )


def load_settings(config_file: str) -> BackupSettings:
    """
    Load settings from a YAML file.

    Args:
        config_file: Path to the settings file

    Returns:
        BackupSettings instance

    Raises:
        SettingsError: If the file is missing, unreadable or malformed
    """
    if not os.path.exists(config_file):
        raise SettingsError(f"Settings file does not exist: {config_file}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"Could not load settings from {config_file}: {e}")

    if not isinstance(data, dict):
        raise SettingsError(f"Settings file is empty or malformed: {config_file}")

    try:
        settings = BackupSettings.from_dict(data)
    except (TypeError, ValueError) as e:
        raise SettingsError(f"Invalid settings in {config_file}: {e}")

    _validate(settings, config_file)
    logger.debug(f"Loaded settings from {config_file}: {settings!r}")
    return settings


def save_settings(settings: BackupSettings, config_file: str) -> Optional[str]:
    """
    Write settings to a YAML file, keeping a copy of the previous file.

    Args:
        settings: Settings to persist
        config_file: Path to the settings file

    Returns:
        Path of the backup copy of the previous file, or None if there was none

    Raises:
        SettingsError: If the file cannot be written
    """
    backup_path = None

    try:
        directory = os.path.dirname(os.path.abspath(config_file))
        os.makedirs(directory, exist_ok=True)

        if os.path.exists(config_file):
            backup_path = config_file + BACKUP_SUFFIX
            shutil.copy2(config_file, backup_path)
            logger.info(f"Previous settings saved to {backup_path}")

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(settings.to_dict(), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise SettingsError(f"Could not save settings to {config_file}: {e}")

    logger.info(f"Settings written to {config_file}")
    return backup_path


def _validate(settings: BackupSettings, config_file: str):
    names = set()
    for job in settings.jobs:
        if not job.name:
            raise SettingsError(f"Backup job without a name in {config_file}")
        if '/' in job.name or '\\' in job.name:
            raise SettingsError(f"Backup job name '{job.name}' must not contain path separators")
        if job.name.lower() in names:
            raise SettingsError(f"Duplicate backup job name '{job.name}' in {config_file}")
        if job.retain_incremental_count < 0:
            raise SettingsError(f"retain_incremental_count must be >= 0 for job '{job.name}'")
        names.add(job.name.lower())

    if settings.remote.protocol not in ('ftp', 'sftp', 's3'):
        raise SettingsError(f"Unknown remote protocol '{settings.remote.protocol}' in {config_file}")
