"""
Packaging of dump directories into artifact files.

Archives are written next to their final location under a hidden
``.partial`` name and renamed into place only once complete, so a reader
never sees a half-written artifact.
"""

import logging
import os
import shutil
import tarfile
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .encryption import EncryptionError, calculate_checksum, decrypt_file, encrypt_file
from .exceptions import BackupTimeout, CompressionFailure

logger = logging.getLogger(__name__)

ARCHIVE_ROOT = "dump"
COMPRESSION_LEVEL = 9


@dataclass
class ArchiveResult:
    path: Path
    size_bytes: int
    checksum: str
    original_size: int
    encrypted: bool = False


def _directory_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


def _partial_path(path: Path, suffix: str = ".partial") -> Path:
    return path.with_name(f".{path.name}{suffix}")


def _unlink(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


def verify_archive(path) -> int:
    """
    Read a tar.gz archive end to end.

    Returns:
        Number of members in the archive

    Raises:
        CompressionFailure: if the gzip or tar stream is truncated or corrupt
    """
    members = 0
    try:
        with tarfile.open(path, "r:gz") as tar:
            for member in tar:
                members += 1
                if member.isfile():
                    stream = tar.extractfile(member)
                    while stream.read(1024 * 1024):
                        pass
    except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
        raise CompressionFailure(f"Archive {Path(path).name} is corrupt: {e}") from e

    if members == 0:
        raise CompressionFailure(f"Archive {Path(path).name} is empty")
    return members


def extract_archive(path, destination: Path) -> Path:
    """
    Extract a tar.gz archive into ``destination`` using the ``data`` filter.

    Raises:
        CompressionFailure: on a corrupt archive or an unsafe member
    """
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(path, "r:gz") as tar:
            tar.extractall(destination, filter="data")
    except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
        raise CompressionFailure(f"Cannot extract {Path(path).name}: {e}") from e
    return destination


class _DeadlineReader:
    """File wrapper that checks the archive deadline before every read."""

    def __init__(self, fileobj, check_deadline):
        self._fileobj = fileobj
        self._check_deadline = check_deadline

    def read(self, size=-1):
        self._check_deadline()
        return self._fileobj.read(size)


class Archiver:
    """Compresses (and optionally encrypts) a dump directory into one file."""

    def __init__(self, timeout: float = 1800, encryption_key: Optional[str] = None):
        self.timeout = timeout
        self.encryption_key = encryption_key

    @property
    def encrypts(self) -> bool:
        return bool(self.encryption_key)

    def _deadline_check(self, deadline: float):
        def check():
            if time.monotonic() > deadline:
                raise BackupTimeout(
                    f"Archiving did not finish within {self.timeout} seconds",
                    phase="archive",
                    seconds=self.timeout,
                )

        return check

    @staticmethod
    def _normalize(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
        tarinfo.uid = tarinfo.gid = 0
        tarinfo.uname = tarinfo.gname = ""
        return tarinfo

    def _add_tree(self, tar: tarfile.TarFile, dump_dir: Path, check_deadline):
        # Parents sort before their children
        for path in [dump_dir] + sorted(dump_dir.rglob("*")):
            check_deadline()
            relative = path.relative_to(dump_dir).as_posix()
            arcname = ARCHIVE_ROOT if relative == "." else f"{ARCHIVE_ROOT}/{relative}"
            tarinfo = self._normalize(tar.gettarinfo(str(path), arcname=arcname))
            if tarinfo.isreg():
                with open(path, "rb") as f:
                    tar.addfile(tarinfo, _DeadlineReader(f, check_deadline))
            else:
                tar.addfile(tarinfo)

    def archive(self, dump_dir: Path, output_path: Path) -> ArchiveResult:
        """
        Package ``dump_dir`` into ``output_path``.

        The dump directory is removed afterwards whether or not packaging
        succeeded.

        Raises:
            CompressionFailure: if packaging fails or yields an empty file
            BackupTimeout: if packaging exceeds the archive timeout
        """
        dump_dir = Path(dump_dir)
        output_path = Path(output_path)
        partial = _partial_path(output_path)
        encrypted_partial = _partial_path(output_path, ".enc.partial")
        check_deadline = self._deadline_check(time.monotonic() + self.timeout)

        try:
            if not dump_dir.is_dir():
                raise CompressionFailure(f"Dump directory not found: {dump_dir}")

            original_size = _directory_size(dump_dir)
            output_path.parent.mkdir(parents=True, exist_ok=True)

            logger.info(f"Archiving {dump_dir} ({original_size} bytes) -> {output_path.name}")
            with tarfile.open(partial, "w:gz", compresslevel=COMPRESSION_LEVEL) as tar:
                self._add_tree(tar, dump_dir, check_deadline)

            if self.encrypts:
                check_deadline()
                encrypt_file(partial, encrypted_partial, key=self.encryption_key)
                check_deadline()
                _unlink(partial)
                os.replace(encrypted_partial, output_path)
            else:
                os.replace(partial, output_path)

            size_bytes = output_path.stat().st_size
            if size_bytes <= 0:
                raise CompressionFailure(f"Archive {output_path.name} is empty")

            checksum = calculate_checksum(output_path)

        except BackupTimeout:
            self._discard(partial, encrypted_partial, output_path)
            logger.error(f"Archiving {dump_dir} timed out after {self.timeout}s")
            raise
        except CompressionFailure:
            self._discard(partial, encrypted_partial, output_path)
            raise
        except (OSError, tarfile.TarError, EncryptionError) as e:
            self._discard(partial, encrypted_partial, output_path)
            raise CompressionFailure(f"Failed to archive {dump_dir}: {e}") from e
        finally:
            shutil.rmtree(dump_dir, ignore_errors=True)

        compression_ratio = (1 - size_bytes / original_size) * 100 if original_size > 0 else 0
        logger.info(
            f"Archived {output_path.name}: {original_size} bytes -> {size_bytes} bytes "
            f"({compression_ratio:.1f}% reduction)"
        )
        return ArchiveResult(
            path=output_path,
            size_bytes=size_bytes,
            checksum=checksum,
            original_size=original_size,
            encrypted=self.encrypts,
        )

    def verify(self, path: Path, scratch_dir: Path, encrypted: bool = False) -> int:
        """
        Check that an artifact can be decrypted (if needed) and read completely.

        Raises:
            CompressionFailure: if the artifact is unreadable
        """
        if not encrypted:
            return verify_archive(path)

        scratch_dir.mkdir(parents=True, exist_ok=True)
        decrypted = scratch_dir / Path(path).name.replace(".enc", "")
        try:
            decrypt_file(path, decrypted, key=self.encryption_key)
            return verify_archive(decrypted)
        except (EncryptionError, ValueError) as e:
            raise CompressionFailure(f"Cannot decrypt {Path(path).name}: {e}") from e
        finally:
            _unlink(decrypted)

    @staticmethod
    def _discard(*paths: Path):
        for path in paths:
            _unlink(path)
