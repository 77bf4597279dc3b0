"""
Settings models persisted in the YAML settings file.

Secrets (archive_password, remote.password, email.password) hold the
obfuscated form produced by zipbackup.utils.master_key; decode them at the
point of use.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the keys that are dataclass fields of cls."""
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in (data or {}).items() if key in names}


@dataclass
class BackupJob:
    """Backup job configuration"""
    name: str
    source_paths: List[str] = field(default_factory=list)
    max_full_age_days: float = 20.0
    retain_incremental_count: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupJob':
        values = _known_fields(cls, data)
        values['source_paths'] = [str(p) for p in values.get('source_paths') or []]
        if 'max_full_age_days' in values:
            values['max_full_age_days'] = float(values['max_full_age_days'])
        if 'retain_incremental_count' in values:
            values['retain_incremental_count'] = int(values['retain_incremental_count'])
        return cls(**values)

    def __repr__(self):
        return f'<BackupJob {self.name} paths={len(self.source_paths)}>'


@dataclass
class RemoteSettings:
    """Remote store configuration"""
    protocol: str = 'ftp'  # ftp, sftp or s3
    address: str = 'ftp.example.com'
    port: int = 21
    use_tls: bool = False
    verify_certificate: bool = True
    username: str = 'ftpuser'
    password: Optional[str] = None
    folder: str = ''
    bucket: str = ''  # s3 only
    region: str = 'us-east-1'  # s3 only
    private_key: str = ''  # sftp only
    verify_sizes: bool = True
    retry_attempts: int = 3
    retry_delay_seconds: float = 10
    keep_alive: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteSettings':
        return cls(**_known_fields(cls, data))


@dataclass
class EmailSettings:
    """Notification e-mail configuration"""
    server: str = 'smtp.gmail.com'
    port: int = 587
    use_tls: bool = True
    username: str = 'donotreply@example.com'
    password: Optional[str] = None
    recipient: str = 'backup@example.com'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmailSettings':
        return cls(**_known_fields(cls, data))


@dataclass
class BackupSettings:
    """Complete persisted configuration"""
    archiver_path: str = '7za'
    compression_level: int = 9
    encrypt_headers: bool = False
    archive_password: Optional[str] = None
    verify_full_archive: bool = True
    local_backup_dir: str = './backups'
    jobs: List[BackupJob] = field(default_factory=list)
    sync_remote: bool = False
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    send_email: bool = False
    send_email_on_success: bool = True
    email: EmailSettings = field(default_factory=EmailSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupSettings':
        values = _known_fields(cls, data)
        values['jobs'] = [BackupJob.from_dict(job) for job in values.get('jobs') or []]
        values['remote'] = RemoteSettings.from_dict(values.get('remote') or {})
        values['email'] = EmailSettings.from_dict(values.get('email') or {})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __repr__(self):
        return f'<BackupSettings jobs={len(self.jobs)} sync_remote={self.sync_remote}>'
