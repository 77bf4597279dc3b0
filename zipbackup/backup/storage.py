"""
Remote stores for backup archives.

Supports:
- FTPStore: FTP or explicit FTPS
- SFTPStore: SFTP over SSH
- S3Store: AWS S3 (or an S3-compatible endpoint)

Backends raise StorageError on failure and RemoteFileNotFound when the
server confirms a file does not exist. RetryingRemoteStore wraps any backend
so every operation is retried and reports exhaustion as None/False.

Keep-alive: FTP and SFTP backends open a fresh connection per operation
unless keep_alive is set. Some FTP servers misbehave with persistent
connections once the session has changed into a folder outside the root.
"""

import ftplib
import logging
import os
import ssl
from abc import ABC, abstractmethod
from contextlib import contextmanager
from ftplib import FTP, FTP_TLS
from pathlib import Path
from typing import Any, Callable, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from zipbackup.models import RemoteSettings
from .retry import DEFAULT_ATTEMPTS, DEFAULT_DELAY_SECONDS, call_with_retries


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

# FTP reply wording. A bare 550 also covers permission and lock failures.
FTP_MISSING_FILE_REPLIES = ('not found', 'no such file', 'does not exist', 'cannot find', "can't find")
FTP_EMPTY_LISTING_REPLIES = ('no files found', 'no such file')


def _ftp_reply_matches(error: Exception, phrases) -> bool:
    reply = str(error).lower()
    return any(phrase in reply for phrase in phrases)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class RemoteFileNotFound(StorageError):
    """Raised when the remote store confirms a file does not exist."""
    pass


class RemoteStore(ABC):
    """Operations the backup engine needs from a remote file store."""

    @abstractmethod
    def list_files(self) -> List[str]:
        """List file names in the remote folder."""

    @abstractmethod
    def upload(self, local_path: str, remote_name: Optional[str] = None):
        """Upload a local file (remote name defaults to the local base name)."""

    @abstractmethod
    def download(self, remote_name: str, local_path: str):
        """Download a remote file to local_path."""

    @abstractmethod
    def size(self, remote_name: str) -> int:
        """Size of a remote file in bytes."""

    @abstractmethod
    def delete(self, remote_name: str):
        """Delete a remote file."""

    @abstractmethod
    def make_directory(self, name: str):
        """Create a directory inside the remote folder."""

    @abstractmethod
    def remove_directory(self, name: str):
        """Remove an empty directory inside the remote folder."""

    def close(self):
        """Release any open connection."""

    def describe(self) -> str:
        return self.__class__.__name__


class FTPStore(RemoteStore):
    """
    Handler for FTP/FTPS servers.

    Transfers are binary and passive. With use_tls the control and data
    channels are both protected (explicit FTPS).
    """

    def __init__(
        self,
        host: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        port: int = 21,
        use_tls: bool = False,
        folder: str = '',
        keep_alive: bool = False,
        verify_certificate: bool = True,
        timeout: float = 60,
        block_size: int = 64 * 1024
    ):
        """
        Initialize FTP store.

        Args:
            host: FTP server address
            username: Login name (anonymous when empty)
            password: Login password
            port: FTP port (default 21)
            use_tls: Use explicit FTPS
            folder: Remote folder holding the archives
            keep_alive: Reuse one connection for all operations
            verify_certificate: Verify the server's TLS certificate
            timeout: Socket timeout in seconds
            block_size: Upload block size
        """
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.use_tls = use_tls
        self.folder = folder.strip('/') if folder else ''
        self.keep_alive = keep_alive
        self.verify_certificate = verify_certificate
        self.timeout = timeout
        self.block_size = block_size
        self._ftp = None

    def describe(self) -> str:
        scheme = 'ftps' if self.use_tls else 'ftp'
        return f"{scheme}://{self.host}:{self.port}/{self.folder}"

    def list_files(self) -> List[str]:
        def nlst(ftp):
            try:
                names = ftp.nlst()
            except (ftplib.error_perm, ftplib.error_temp) as e:
                # Some servers answer an empty directory with "550/450 No files found"
                if _ftp_reply_matches(e, FTP_EMPTY_LISTING_REPLIES):
                    return []
                raise
            return [name.rsplit('/', 1)[-1] for name in names if name not in ('.', '..')]

        return self._run('list', nlst)

    def upload(self, local_path: str, remote_name: Optional[str] = None):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")
        remote_name = remote_name or os.path.basename(local_path)

        def store(ftp):
            with open(local_path, 'rb') as f:
                ftp.storbinary(f'STOR {remote_name}', f, blocksize=self.block_size)

        self._run(f'upload {remote_name}', store)

    def download(self, remote_name: str, local_path: str):
        def retrieve(ftp):
            with open(local_path, 'wb') as f:
                ftp.retrbinary(f'RETR {remote_name}', f.write)

        self._run(f'download {remote_name}', retrieve, remote_name)

    def size(self, remote_name: str) -> int:
        def query(ftp):
            ftp.voidcmd('TYPE I')
            value = ftp.size(remote_name)
            if value is None:
                raise StorageError(f"Server did not report a size for {remote_name}")
            return int(value)

        return self._run(f'size {remote_name}', query, remote_name)

    def delete(self, remote_name: str):
        self._run(f'delete {remote_name}', lambda ftp: ftp.delete(remote_name), remote_name)

    def make_directory(self, name: str):
        self._run(f'mkdir {name}', lambda ftp: ftp.mkd(name))

    def remove_directory(self, name: str):
        self._run(f'rmdir {name}', lambda ftp: ftp.rmd(name), name)

    def close(self):
        if self._ftp is not None:
            self._quit(self._ftp)
            self._ftp = None

    def _connect(self) -> FTP:
        if self.use_tls:
            context = ssl.create_default_context()
            if not self.verify_certificate:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            ftp = FTP_TLS(context=context, timeout=self.timeout)
        else:
            ftp = FTP(timeout=self.timeout)

        ftp.connect(self.host, self.port)
        ftp.login(self.username or 'anonymous', self.password or '')
        if self.use_tls:
            ftp.prot_p()
        ftp.set_pasv(True)
        if self.folder:
            ftp.cwd(self.folder)
        return ftp

    @staticmethod
    def _quit(ftp: FTP):
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()

    @contextmanager
    def _session(self):
        if not self.keep_alive:
            ftp = self._connect()
            try:
                yield ftp
            finally:
                self._quit(ftp)
            return

        if self._ftp is None:
            self._ftp = self._connect()
        try:
            yield self._ftp
        except ftplib.all_errors:
            # A broken persistent connection is reopened on the next operation
            self.close()
            raise

    def _run(self, description: str, func: Callable[[FTP], Any], remote_name: Optional[str] = None) -> Any:
        try:
            with self._session() as ftp:
                return func(ftp)
        except ftplib.error_perm as e:
            if remote_name and str(e).startswith('550') and _ftp_reply_matches(e, FTP_MISSING_FILE_REPLIES):
                raise RemoteFileNotFound(f"Remote file not found: {remote_name} ({e})")
            raise StorageError(f"FTP {description} failed: {e}")
        except ftplib.all_errors as e:
            raise StorageError(f"FTP {description} failed: {e}")


class SFTPStore(RemoteStore):
    """
    Handler for SFTP servers via SSH.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        folder: str = '',
        private_key: Optional[str] = None,
        keep_alive: bool = False,
        timeout: float = 30
    ):
        """
        Initialize SFTP store.

        Args:
            host: SSH hostname or IP
            username: SSH username
            password: SSH password (optional if using key)
            port: SSH port (default 22)
            folder: Remote folder holding the archives
            private_key: Path to private key file (optional)
            keep_alive: Reuse one connection for all operations
            timeout: Connection timeout in seconds
        """
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.folder = folder
        self.private_key_path = private_key
        self.keep_alive = keep_alive
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def describe(self) -> str:
        return f"sftp://{self.host}:{self.port}/{self.folder}"

    def list_files(self) -> List[str]:
        return self._run('list', lambda sftp: sftp.listdir('.'))

    def upload(self, local_path: str, remote_name: Optional[str] = None):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")
        remote_name = remote_name or os.path.basename(local_path)
        self._run(f'upload {remote_name}', lambda sftp: sftp.put(local_path, remote_name))

    def download(self, remote_name: str, local_path: str):
        self._run(f'download {remote_name}', lambda sftp: sftp.get(remote_name, local_path), remote_name)

    def size(self, remote_name: str) -> int:
        return self._run(f'size {remote_name}', lambda sftp: sftp.stat(remote_name).st_size, remote_name)

    def delete(self, remote_name: str):
        self._run(f'delete {remote_name}', lambda sftp: sftp.remove(remote_name), remote_name)

    def make_directory(self, name: str):
        self._run(f'mkdir {name}', lambda sftp: sftp.mkdir(name))

    def remove_directory(self, name: str):
        self._run(f'rmdir {name}', lambda sftp: sftp.rmdir(name), name)

    def _connect(self):
        """
        Establish SSH connection and open the SFTP session.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout
            }

            # Use password or private key
            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise StorageError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            if self.folder:
                self.sftp_client.chdir(self.folder)

        except StorageError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def _run(self, description: str, func: Callable[[Any], Any], remote_name: Optional[str] = None) -> Any:
        if self.sftp_client is None:
            self._connect()

        try:
            return func(self.sftp_client)
        except FileNotFoundError as e:
            if remote_name:
                raise RemoteFileNotFound(f"Remote file not found: {remote_name}")
            raise StorageError(f"SFTP {description} failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            # Drop a possibly broken session, the next operation reconnects
            self.close()
            raise StorageError(f"SFTP {description} failed: {e}")
        finally:
            if not self.keep_alive:
                self.close()


class S3Store(RemoteStore):
    """
    Handler for AWS S3 buckets.

    The remote folder becomes a key prefix: {folder}/{filename}.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        folder: str = '',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 store.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            folder: Key prefix holding the archives
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = f"{folder.strip('/')}/" if folder and folder.strip('/') else ''

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url or None
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def list_files(self) -> List[str]:
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(self.prefix):]
                    if name:
                        names.append(name)

            return names

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def upload(self, local_path: str, remote_name: Optional[str] = None):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = self.prefix + (remote_name or os.path.basename(local_path))

        try:
            if os.path.getsize(local_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload a large file in MULTIPART_CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Could not abort multipart upload of {s3_key}: {abort_error}")
            raise

    def download(self, remote_name: str, local_path: str):
        try:
            self.s3_client.download_file(self.bucket_name, self.prefix + remote_name, local_path)
        except ClientError as e:
            self._raise_for(e, 'download', remote_name)
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def size(self, remote_name: str) -> int:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self.prefix + remote_name)
            return int(response['ContentLength'])
        except ClientError as e:
            self._raise_for(e, 'size', remote_name)
        except BotoCoreError as e:
            raise StorageError(f"S3 size query failed: {e}")

    def delete(self, remote_name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.prefix + remote_name)
        except ClientError as e:
            self._raise_for(e, 'delete', remote_name)
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def make_directory(self, name: str):
        # S3 has no directories; a zero-byte "name/" marker stands in for one
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=f"{self.prefix}{name.strip('/')}/", Body=b'')
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 mkdir failed: {e}")

    def remove_directory(self, name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=f"{self.prefix}{name.strip('/')}/")
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 rmdir failed: {e}")

    @staticmethod
    def _raise_for(error: ClientError, operation: str, remote_name: str):
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        if error_code in ('404', 'NoSuchKey', 'NotFound'):
            raise RemoteFileNotFound(f"Remote file not found: {remote_name}")
        raise StorageError(f"S3 {operation} failed ({error_code}): {error}")


class RetryingRemoteStore:
    """
    Retry wrapper applied uniformly to every remote primitive.

    Exhausted retries yield None (list_files, size) or False (upload,
    download, delete, make_directory, remove_directory) instead of raising.
    RemoteFileNotFound is a definitive answer: it is not retried and
    propagates to the caller.
    """

    def __init__(
        self,
        store: RemoteStore,
        attempts: int = DEFAULT_ATTEMPTS,
        delay: float = DEFAULT_DELAY_SECONDS,
        sleep: Optional[Callable[[float], None]] = None
    ):
        self.store = store
        self.attempts = attempts
        self.delay = delay
        self.last_error: Optional[str] = None
        self._sleep = sleep

    def describe(self) -> str:
        return self.store.describe()

    def list_files(self) -> Optional[List[str]]:
        return self._call('list', self.store.list_files, failure=None)

    def upload(self, local_path: str, remote_name: Optional[str] = None) -> bool:
        name = remote_name or os.path.basename(local_path)
        return self._call(f'upload {name}', lambda: self.store.upload(local_path, remote_name) or True)

    def download(self, remote_name: str, local_path: str) -> bool:
        return self._call(f'download {remote_name}', lambda: self.store.download(remote_name, local_path) or True)

    def size(self, remote_name: str) -> Optional[int]:
        return self._call(f'size {remote_name}', lambda: self.store.size(remote_name), failure=None)

    def delete(self, remote_name: str) -> bool:
        return self._call(f'delete {remote_name}', lambda: self.store.delete(remote_name) or True)

    def make_directory(self, name: str) -> bool:
        return self._call(f'mkdir {name}', lambda: self.store.make_directory(name) or True)

    def remove_directory(self, name: str) -> bool:
        return self._call(f'rmdir {name}', lambda: self.store.remove_directory(name) or True)

    def close(self):
        self.store.close()

    def _call(self, description: str, operation: Callable[[], Any], failure: Any = False) -> Any:
        self.last_error = None

        def attempt():
            try:
                return operation()
            except Exception as e:
                self.last_error = str(e)
                raise

        kwargs = {}
        if self._sleep is not None:
            kwargs['sleep'] = self._sleep

        return call_with_retries(
            attempt,
            attempts=self.attempts,
            delay=self.delay,
            failure=failure,
            description=f"Remote {description}",
            no_retry=(RemoteFileNotFound,),
            **kwargs
        )


def create_remote_store(remote: RemoteSettings, password: Optional[str] = None) -> RemoteStore:
    """
    Factory function to create the configured remote store backend.

    Args:
        remote: Remote settings
        password: Decoded password (secret key for S3)

    Returns:
        FTPStore, SFTPStore or S3Store instance

    Raises:
        ValueError: If the protocol is invalid
    """
    protocol = (remote.protocol or 'ftp').lower()

    if protocol == 'ftp':
        return FTPStore(
            host=remote.address,
            username=remote.username,
            password=password,
            port=remote.port or 21,
            use_tls=remote.use_tls,
            folder=remote.folder,
            keep_alive=remote.keep_alive,
            verify_certificate=remote.verify_certificate
        )
    elif protocol == 'sftp':
        return SFTPStore(
            host=remote.address,
            username=remote.username,
            password=password,
            port=remote.port or 22,
            folder=remote.folder,
            private_key=remote.private_key or None,
            keep_alive=remote.keep_alive
        )
    elif protocol == 's3':
        # For S3 the address is only used as a custom endpoint URL
        endpoint_url = remote.address if (remote.address or '').startswith(('http://', 'https://')) else None
        return S3Store(
            access_key=remote.username,
            secret_key=password,
            bucket_name=remote.bucket,
            region=remote.region,
            folder=remote.folder,
            endpoint_url=endpoint_url
        )
    else:
        raise ValueError(f"Invalid remote protocol: {remote.protocol}")
