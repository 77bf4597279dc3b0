"""
Keep the machine awake while a backup run is in progress.

SleepInhibitor is a context manager acquired for the whole run and released
on every exit path:
- Windows: SetThreadExecutionState(ES_CONTINUOUS | ES_SYSTEM_REQUIRED)
- macOS: a `caffeinate -i -w <pid>` helper process
- Linux: a `systemd-inhibit --what=idle:sleep` helper process

Inhibition is best effort. When no mechanism is available the run proceeds
and a debug message is logged.
"""

import logging
import os
import shutil
import subprocess
import sys
from typing import Optional


logger = logging.getLogger(__name__)

ES_CONTINUOUS = 0x80000000
ES_SYSTEM_REQUIRED = 0x00000001


class SleepInhibitor:
    """
    Scoped guard preventing idle sleep.

    Usage:
        with SleepInhibitor():
            run_backups()
    """

    def __init__(self, reason: str = 'Backup in progress'):
        self.reason = reason
        self.active = False
        self._process: Optional[subprocess.Popen] = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False

    def acquire(self):
        """Start inhibiting system sleep."""
        if self.active:
            return

        try:
            if sys.platform == 'win32':
                self._set_execution_state(ES_CONTINUOUS | ES_SYSTEM_REQUIRED)
            else:
                command = self._helper_command()
                if command is None:
                    logger.debug("No sleep inhibition mechanism available on this system")
                    return
                self._process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL
                )
            self.active = True
            logger.debug("System sleep inhibited")
        except OSError as e:
            logger.warning(f"Could not inhibit system sleep: {e}")

    def release(self):
        """Restore normal power management."""
        if not self.active:
            return

        try:
            if sys.platform == 'win32':
                self._set_execution_state(ES_CONTINUOUS)
            elif self._process is not None:
                self._process.terminate()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    self._process.kill()
            logger.debug("System sleep allowed again")
        except OSError as e:
            logger.warning(f"Could not release sleep inhibition: {e}")
        finally:
            self._process = None
            self.active = False

    def _helper_command(self) -> Optional[list]:
        if sys.platform == 'darwin' and shutil.which('caffeinate'):
            return ['caffeinate', '-i', '-w', str(os.getpid())]

        if shutil.which('systemd-inhibit'):
            return [
                'systemd-inhibit',
                '--what=idle:sleep',
                '--who=zipbackup',
                f'--why={self.reason}',
                '--mode=block',
                'sleep', 'infinity'
            ]

        return None

    @staticmethod
    def _set_execution_state(flags: int):
        import ctypes
        ctypes.windll.kernel32.SetThreadExecutionState(flags)
