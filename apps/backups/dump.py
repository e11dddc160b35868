"""
Database export with mongodump.

The executor owns its output directory for the duration of a dump: it is
created fresh and, on any failure, removed again so that no partial export
is ever mistaken for a complete one.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional

from .conf import mask_uri
from .exceptions import BackupTimeout, DumpFailure
from .process import ProcessRunner, SubprocessRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DumpOptions:
    excluded_collections: FrozenSet[str] = field(default_factory=frozenset)
    point_in_time: bool = False
    parallelism: Optional[int] = None

    def as_metadata(self) -> dict:
        return {
            "excluded_collections": sorted(self.excluded_collections),
            "point_in_time": self.point_in_time,
            "parallelism": self.parallelism,
        }


class DumpExecutor:
    """Runs mongodump against a connection URI into a fresh directory."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        binary: str = "mongodump",
        timeout: float = 3600,
    ):
        self.runner = runner or SubprocessRunner()
        self.binary = binary
        self.timeout = timeout

    def build_command(self, uri: str, output_dir: Path, options: DumpOptions) -> List[str]:
        cmd = [self.binary, f"--uri={uri}", f"--out={output_dir}"]
        if options.point_in_time:
            cmd.append("--oplog")
        if options.parallelism:
            cmd.append(f"--numParallelCollections={options.parallelism}")
        for collection in sorted(options.excluded_collections):
            cmd.append(f"--excludeCollection={collection}")
        return cmd

    def dump(self, uri: str, output_dir: Path, options: Optional[DumpOptions] = None) -> Path:
        """
        Export the database at ``uri`` into ``output_dir``.

        Returns:
            The output directory, containing at least one file

        Raises:
            DumpFailure: on a non-zero exit, an empty export, or an unusable output dir
            BackupTimeout: if the export exceeds the dump timeout
        """
        options = options or DumpOptions()
        output_dir = Path(output_dir)

        if output_dir.exists() and any(output_dir.iterdir()):
            # Not ours to delete
            raise DumpFailure(f"Dump output directory already exists and is not empty: {output_dir}")

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DumpFailure(f"Cannot create dump output directory {output_dir}: {e}") from e

        cmd = self.build_command(uri, output_dir, options)
        logger.info(f"Starting mongodump of {mask_uri(uri)} into {output_dir}")

        try:
            result = self.runner.run(cmd, timeout=self.timeout, phase="dump")
        except BackupTimeout as e:
            self._discard(output_dir)
            logger.error(f"mongodump timed out after {self.timeout}s")
            raise BackupTimeout(str(e), phase="dump", seconds=self.timeout) from e
        except Exception as e:
            self._discard(output_dir)
            raise DumpFailure(f"mongodump could not be run: {e}") from e

        if not result.ok:
            self._discard(output_dir)
            raise DumpFailure(f"mongodump exited with code {result.returncode}: {result.tail()}")

        if not any(path.is_file() for path in output_dir.rglob("*")):
            self._discard(output_dir)
            raise DumpFailure("mongodump succeeded but produced no output files")

        logger.info(f"mongodump completed in {result.duration_seconds:.1f}s")
        return output_dir

    def check_available(self) -> str:
        """
        Return the tool's version banner.

        Raises:
            DumpFailure: if the tool is missing or not runnable
        """
        result = self.runner.run([self.binary, "--version"], timeout=30)
        if not result.ok:
            raise DumpFailure(f"{self.binary} is not available: {result.tail()}")
        lines = result.stdout.strip().splitlines()
        return lines[0] if lines else self.binary

    @staticmethod
    def _discard(output_dir: Path):
        shutil.rmtree(output_dir, ignore_errors=True)
