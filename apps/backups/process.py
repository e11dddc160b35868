"""
External process execution for the dump and restore tools.

The pipeline only talks to ``ProcessRunner``; tests swap in fakes that record
the argument vector and simulate exit codes, output files and timeouts.
"""

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from .exceptions import BackupTimeout

logger = logging.getLogger(__name__)

# Exit code reported when the executable cannot be found, as a shell would
COMMAND_NOT_FOUND = 127


@dataclass
class ProcessResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 20) -> str:
        """Last lines of stderr (or stdout) for error messages."""
        output = (self.stderr or self.stdout or "").strip()
        return "\n".join(output.splitlines()[-lines:])


class ProcessRunner:
    """Runs an external program to completion with a timeout."""

    def run(
        self,
        args: Sequence[str],
        timeout: float,
        env: Optional[Dict[str, str]] = None,
        phase: Optional[str] = None,
    ) -> ProcessResult:
        """
        Run ``args`` and wait for it.

        Raises:
            BackupTimeout: if the process is still running after ``timeout`` seconds
        """
        raise NotImplementedError


class SubprocessRunner(ProcessRunner):
    """``subprocess.run`` based runner; the child is killed on timeout."""

    def run(self, args, timeout, env=None, phase=None):
        program = args[0]
        start_time = time.time()
        logger.debug(f"Running {program} with {len(args) - 1} argument(s), timeout={timeout}s")

        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise BackupTimeout(
                f"{program} did not finish within {timeout} seconds",
                phase=phase,
                seconds=timeout,
            ) from e
        except FileNotFoundError:
            logger.error(f"Executable not found: {program}")
            return ProcessResult(
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{program}: command not found",
                duration_seconds=time.time() - start_time,
            )

        result = ProcessResult(
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_seconds=time.time() - start_time,
        )
        logger.debug(f"{program} exited with {result.returncode} in {result.duration_seconds:.1f}s")
        return result
