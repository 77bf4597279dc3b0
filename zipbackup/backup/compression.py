"""
7-Zip archive handling for backup archives.

Covers:
- Archive naming: F-<JobName>-<yyyy-MM-dd-HH-mm-ss>.7z (full) and
  I-<JobName>-<yyyy-MM-dd-HH-mm-ss>.7z (incremental)
- Building 7-Zip command lines for create, update and test
- Running the archiver as a subprocess with a bounded wait

The timestamp must stay zero-padded and fixed-width: retention orders
archives by comparing file names as strings.
"""

import logging
import os
import re
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterator, List, NamedTuple, Optional


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = '.7z'
ARCHIVE_TYPE = '7z'
TIMESTAMP_FORMAT = '%Y-%m-%d-%H-%M-%S'
FULL_PREFIX = 'F'
INCREMENTAL_PREFIX = 'I'
DEFAULT_TIMEOUT = 30 * 60

# 7-Zip update switches: leave the base archive untouched (-u-) and write
# files that are new or changed since the base to a second archive.
INCREMENTAL_UPDATE_SWITCH = '-up0q3r2x2y2z0w2!'

_ARCHIVE_NAME_RE = re.compile(
    r'^(?P<kind>[FI])-(?P<job>.+)-(?P<timestamp>\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2})\.7z$',
    re.IGNORECASE
)


class CompressionError(Exception):
    """Raised when the archiver is called with invalid input."""
    pass


class ArchiveMode(Enum):
    """7-Zip commands used by the backup engine."""
    CREATE = 'a'
    UPDATE = 'u'
    TEST = 't'


class ArchiveName(NamedTuple):
    """Parsed components of an archive file name."""
    kind: str
    job_name: str
    timestamp: datetime


@dataclass
class ArchiveResult:
    """Outcome of one archiver invocation."""
    exit_code: Optional[int]
    output: str = ''
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def describe(self) -> str:
        if self.error:
            return self.error
        return f"Archiver exit code: {self.exit_code}"


def generate_archive_filename(kind: str, job_name: str, now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {F|I}-{job_name}-{yyyy-MM-dd-HH-mm-ss}.7z

    Args:
        kind: FULL_PREFIX or INCREMENTAL_PREFIX
        job_name: Name of the backup job
        now: Timestamp to embed (default: current local time)

    Returns:
        Filename (without path)
    """
    if kind not in (FULL_PREFIX, INCREMENTAL_PREFIX):
        raise ValueError(f"Invalid archive kind: {kind}")

    if now is None:
        now = datetime.now()

    return f"{kind}-{job_name}-{now.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_EXTENSION}"


def parse_archive_filename(filename: str) -> Optional[ArchiveName]:
    """
    Parse an archive filename produced by generate_archive_filename().

    Args:
        filename: File name (a path is reduced to its base name)

    Returns:
        ArchiveName, or None if the name does not follow the convention
    """
    match = _ARCHIVE_NAME_RE.match(os.path.basename(filename))
    if not match:
        return None

    try:
        timestamp = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return ArchiveName(match.group('kind').upper(), match.group('job'), timestamp)


def is_job_archive(filename: str, kind: str, job_name: str) -> bool:
    """Check whether filename is an archive of the given kind for job_name."""
    parsed = parse_archive_filename(filename)
    return (
        parsed is not None
        and parsed.kind == kind
        and parsed.job_name.lower() == job_name.lower()
    )


def is_backup_archive_name(filename: str) -> bool:
    """
    Check whether a name looks like any backup archive (F-*.7z or I-*.7z).

    Used to filter remote listings, case-insensitively.
    """
    lowered = filename.lower()
    return lowered.endswith(ARCHIVE_EXTENSION) and (lowered.startswith('f-') or lowered.startswith('i-'))


def build_archiver_arguments(
    executable: str,
    mode: ArchiveMode,
    container_path: str,
    file_list_path: Optional[str] = None,
    compression_level: int = 9,
    encrypt_headers: bool = False,
    password: Optional[str] = None,
    update_target: Optional[str] = None
) -> List[str]:
    """
    Build a 7-Zip command line.

    Args:
        executable: Path to 7z/7za
        mode: CREATE, UPDATE or TEST
        container_path: Archive to create, update from, or test
        file_list_path: List file with one source path per line (CREATE/UPDATE)
        compression_level: 0-9
        encrypt_headers: Encrypt archive headers (file names)
        password: Archive password (optional)
        update_target: Incremental archive receiving the changes (UPDATE only)

    Returns:
        Argument list for subprocess

    Raises:
        CompressionError: If required arguments for the mode are missing
    """
    arguments = [executable, mode.value, str(container_path)]

    if mode is ArchiveMode.TEST:
        if password:
            arguments.append(f'-p{password}')
        return arguments

    if not file_list_path:
        raise CompressionError("A file list is required to create or update an archive")

    arguments.append(f'-t{ARCHIVE_TYPE}')
    arguments.append(f'-mx={compression_level}')
    arguments.append(f"-mhe={'on' if encrypt_headers else 'off'}")

    if password:
        arguments.append(f'-p{password}')

    if mode is ArchiveMode.UPDATE:
        if not update_target:
            raise CompressionError("An incremental target is required to update an archive")
        arguments.append('-ms=off')
        arguments.append('-u-')
        arguments.append(f'{INCREMENTAL_UPDATE_SWITCH}{update_target}')

    arguments.append('-scsUTF-8')
    arguments.append(f'@{file_list_path}')
    return arguments


def mask_arguments(arguments: List[str]) -> str:
    """Render a command line for logging with the password hidden."""
    return ' '.join('-p***' if arg.startswith('-p') else arg for arg in arguments)


@contextmanager
def source_file_list(source_paths: List[str], directory: Optional[str] = None) -> Iterator[str]:
    """
    Write a transient list file naming the source paths, one per line.

    The file is removed when the context exits, whatever the outcome.

    Args:
        source_paths: Paths to include in the archive
        directory: Where to create the list file (default: system temp dir)

    Yields:
        Path of the list file

    Raises:
        CompressionError: If no source paths are given
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    fd, list_path = tempfile.mkstemp(prefix='zipbackup_', suffix='.lst', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            for path in source_paths:
                f.write(os.path.expanduser(path) + '\n')
        yield list_path
    finally:
        if os.path.exists(list_path):
            os.remove(list_path)


def run_archiver(arguments: List[str], timeout: float = DEFAULT_TIMEOUT) -> ArchiveResult:
    """
    Run the archiver and wait for it to finish.

    Args:
        arguments: Command line from build_archiver_arguments()
        timeout: Maximum wait in seconds

    Returns:
        ArchiveResult (a timeout or missing executable is a failed result)
    """
    logger.debug(f"Running archiver: {mask_arguments(arguments)}")

    try:
        completed = subprocess.run(
            arguments,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors='replace',
            timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        output = e.output if isinstance(e.output, str) else ''
        return ArchiveResult(None, output or '', f"Archiver timed out after {int(timeout)} seconds")
    except OSError as e:
        return ArchiveResult(None, '', f"Could not start archiver '{arguments[0]}': {e}")

    return ArchiveResult(completed.returncode, completed.stdout or '')


class Archiver:
    """
    Configured 7-Zip invoker.

    One instance per run, built from the settings' archiver path,
    compression level, header encryption flag and archive password.
    """

    def __init__(
        self,
        executable: str,
        compression_level: int = 9,
        encrypt_headers: bool = False,
        password: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        list_directory: Optional[str] = None
    ):
        self.executable = executable
        self.compression_level = compression_level
        self.encrypt_headers = encrypt_headers
        self.password = password
        self.timeout = timeout
        self.list_directory = list_directory

    def create(self, container_path: str, source_paths: List[str]) -> ArchiveResult:
        """
        Create a new full archive containing all source paths.

        Removes the partial archive if creation fails.
        """
        return self._write(ArchiveMode.CREATE, container_path, source_paths, output_path=container_path)

    def update(self, container_path: str, source_paths: List[str], incremental_path: str) -> ArchiveResult:
        """
        Write changes since container_path into incremental_path.

        The base container is left untouched. Removes the partial
        incremental archive if the update fails.
        """
        return self._write(
            ArchiveMode.UPDATE, container_path, source_paths,
            output_path=incremental_path, update_target=incremental_path
        )

    def test(self, container_path: str) -> ArchiveResult:
        """Check the structural integrity of an existing archive."""
        arguments = build_archiver_arguments(
            self.executable, ArchiveMode.TEST, container_path, password=self.password
        )
        return run_archiver(arguments, self.timeout)

    def _write(
        self,
        mode: ArchiveMode,
        container_path: str,
        source_paths: List[str],
        output_path: str,
        update_target: Optional[str] = None
    ) -> ArchiveResult:
        try:
            with source_file_list(source_paths, self.list_directory) as list_path:
                arguments = build_archiver_arguments(
                    self.executable,
                    mode,
                    container_path,
                    file_list_path=list_path,
                    compression_level=self.compression_level,
                    encrypt_headers=self.encrypt_headers,
                    password=self.password,
                    update_target=update_target
                )
                result = run_archiver(arguments, self.timeout)
        except CompressionError as e:
            result = ArchiveResult(None, '', str(e))
        except OSError as e:
            result = ArchiveResult(None, '', f"Could not write archive file list: {e}")

        if not result.succeeded and os.path.exists(output_path):
            try:
                os.remove(output_path)
                logger.info(f"Removed partial archive: {output_path}")
            except OSError as e:
                logger.warning(f"Could not remove partial archive {output_path}: {e}")

        return result


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
