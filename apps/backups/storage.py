"""
Storage for backup artifacts.

``LocalArtifactStore`` owns the on-disk layout and is the only component that
creates or deletes files under the backup root::

    {root}/{tier}/backup_{tier}_{id}.tar.gz[.enc]   retained artifacts
    {root}/temp/                                      scratch for running operations
    {root}/locks/                                     exclusivity lock files

``S3CompatibleStorage`` replicates artifacts to AWS S3, Cloudflare R2 or
Backblaze B2. The three providers speak the same S3 API and differ only by
endpoint, region and which upload options they accept.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .conf import TIERS, Destination
from .exceptions import BackupTimeout, UploadFailure

logger = logging.getLogger(__name__)

TEMP_DIR = "temp"
LOCKS_DIR = "locks"


class LocalArtifactStore:
    """Local filesystem layout for artifacts, scratch space and locks."""

    def __init__(self, root):
        self.root = Path(root)

    @property
    def temp_dir(self) -> Path:
        return self.root / TEMP_DIR

    @property
    def locks_dir(self) -> Path:
        return self.root / LOCKS_DIR

    def ensure_layout(self):
        for tier in TIERS:
            (self.root / tier).mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    def scratch_path(self, name: str) -> Path:
        """Path for a scratch file or directory; the temp dir is created if needed."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return self.temp_dir / name

    def new_artifact_path(self, tier: str, filename: str) -> Path:
        if tier not in TIERS:
            raise ValueError(f"Unknown backup tier: {tier}")
        tier_dir = self.root / tier
        tier_dir.mkdir(parents=True, exist_ok=True)
        path = tier_dir / filename
        if path.exists():
            raise FileExistsError(f"Artifact already exists: {path}")
        return path

    def relative_path(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.root.resolve()).as_posix()

    def absolute_path(self, relative_path: str) -> Path:
        """
        Resolve a path stored on a backup record.

        Raises:
            ValueError: if the path escapes the backup root
        """
        path = (self.root / relative_path).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Path {relative_path!r} is outside the backup root")
        return path

    def exists(self, relative_path: str) -> bool:
        if not relative_path:
            return False
        path = self.absolute_path(relative_path)
        return path.exists() and path.is_file()

    def delete(self, relative_path: str) -> bool:
        """
        Delete an artifact file.

        Returns:
            True if the file is gone afterwards, False if deletion failed
        """
        try:
            full_path = self.absolute_path(relative_path)
            if not full_path.exists():
                logger.warning(f"LocalArtifactStore: File not found for deletion: {full_path}")
                return True  # Already deleted

            full_path.unlink()
            logger.info(f"LocalArtifactStore: Deleted {full_path}")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"LocalArtifactStore: Failed to delete {relative_path}: {e}")
            return False

    def discard_scratch(self, path: Path):
        """Remove a scratch file or directory if it still exists."""
        path = Path(path)
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        elif path.exists():
            path.unlink()

    def purge_stale_temp(self, max_age_seconds: int) -> int:
        """
        Remove scratch entries older than ``max_age_seconds``.

        Returns:
            Number of entries removed
        """
        if not self.temp_dir.exists():
            return 0

        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in self.temp_dir.iterdir():
            try:
                if entry.lstat().st_mtime >= cutoff:
                    continue
                self.discard_scratch(entry)
                removed += 1
                logger.info(f"LocalArtifactStore: Purged stale scratch entry {entry.name}")
            except OSError as e:
                logger.warning(f"LocalArtifactStore: Could not purge {entry}: {e}")
        return removed


class RemoteStorage:
    """Base class for remote object stores."""

    provider = ""

    def __init__(self, destination: Destination):
        self.destination = destination

    @property
    def name(self) -> str:
        return self.destination.name

    def key_for(self, tier: str, filename: str) -> str:
        prefix = self.destination.prefix or ""
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return f"{prefix}{tier}/{filename}"

    def location_uri(self, key: str) -> str:
        return f"{self.destination.provider}://{self.destination.bucket}/{key}"

    def upload(self, local_path: Path, key: str, metadata: Dict[str, str]) -> None:
        """
        Upload a file.

        Raises:
            UploadFailure: if the upload fails
            BackupTimeout: if the upload exceeds its time budget
        """
        raise NotImplementedError

    def head(self, key: str) -> Optional[dict]:
        """
        Return ``{"size": int, "metadata": dict}`` or None if the object doesn't exist.

        Raises:
            UploadFailure: if the store cannot be queried
        """
        raise NotImplementedError

    def download(self, key: str, local_path: Path) -> bool:
        raise NotImplementedError


class S3CompatibleStorage(RemoteStorage):
    """boto3-backed storage for the ``s3``, ``r2`` and ``b2`` providers."""

    def __init__(self, destination: Destination, timeout: float = 1800, client=None):
        super().__init__(destination)
        self.provider = destination.provider
        self.timeout = timeout
        self.client = client or self._create_client()
        logger.info(
            f"S3CompatibleStorage initialized: {destination.name} "
            f"({destination.provider}) bucket={destination.bucket}"
        )

    @property
    def endpoint_url(self) -> Optional[str]:
        destination = self.destination
        if destination.endpoint_url:
            return destination.endpoint_url
        if destination.provider == "r2":
            return f"https://{destination.account_id}.r2.cloudflarestorage.com"
        if destination.provider == "b2":
            return f"https://s3.{destination.region}.backblazeb2.com"
        return None

    @property
    def region_name(self) -> str:
        # R2 uses 'auto' for region
        return "auto" if self.destination.provider == "r2" else self.destination.region

    def _create_client(self):
        kwargs = {
            "endpoint_url": self.endpoint_url,
            "region_name": self.region_name,
            "config": Config(
                connect_timeout=60,
                read_timeout=min(self.timeout, 300),
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        }
        # Empty credentials on s3 fall back to the default boto3 credential chain
        if self.destination.access_key_id:
            kwargs["aws_access_key_id"] = self.destination.access_key_id
            kwargs["aws_secret_access_key"] = self.destination.secret_access_key
        return boto3.client("s3", **kwargs)

    def extra_args(self, metadata: Dict[str, str]) -> dict:
        destination = self.destination
        extra_args = {"Metadata": dict(metadata)}
        # R2 encrypts every object at rest and rejects the SSE header
        if destination.provider != "r2":
            extra_args["ServerSideEncryption"] = destination.server_side_encryption
            if destination.server_side_encryption == "aws:kms":
                extra_args["SSEKMSKeyId"] = destination.kms_key_id
        if destination.storage_class and destination.provider == "s3":
            extra_args["StorageClass"] = destination.storage_class
        return extra_args

    def _deadline_callback(self) -> Callable[[int], None]:
        deadline = time.monotonic() + self.timeout

        def check(bytes_transferred):
            if time.monotonic() > deadline:
                raise BackupTimeout(
                    f"Upload to {self.name} did not finish within {self.timeout} seconds",
                    phase="upload",
                    seconds=self.timeout,
                )

        return check

    def upload(self, local_path, key, metadata):
        try:
            with open(local_path, "rb") as file:
                self.client.upload_fileobj(
                    file,
                    self.destination.bucket,
                    key,
                    ExtraArgs=self.extra_args(metadata),
                    Callback=self._deadline_callback(),
                    Config=TransferConfig(use_threads=False),
                )
        except BackupTimeout:
            raise
        except (ClientError, BotoCoreError, OSError) as e:
            raise UploadFailure(f"Upload of {key} to {self.name} failed: {e}", destination=self.name) from e

        logger.info(f"S3CompatibleStorage: Uploaded {Path(local_path).name} to {self.location_uri(key)}")

    def head(self, key):
        try:
            response = self.client.head_object(Bucket=self.destination.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise UploadFailure(f"Cannot inspect {key} on {self.name}: {e}", destination=self.name) from e
        except BotoCoreError as e:
            raise UploadFailure(f"Cannot inspect {key} on {self.name}: {e}", destination=self.name) from e

        return {
            "size": response["ContentLength"],
            "metadata": response.get("Metadata", {}),
            "server_side_encryption": response.get("ServerSideEncryption", ""),
        }

    def download(self, key, local_path):
        """
        Download an object.

        Returns:
            True if download succeeded, False otherwise
        """
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with open(local_path, "wb") as file:
                self.client.download_fileobj(self.destination.bucket, key, file)

            logger.info(f"S3CompatibleStorage: Downloaded {self.location_uri(key)} to {local_path}")
            return True

        except (ClientError, BotoCoreError, OSError) as e:
            logger.error(f"S3CompatibleStorage: Failed to download {key} from {self.name}: {e}")
            return False


def get_remote_storage(destination: Destination, timeout: float = 1800) -> RemoteStorage:
    """
    Factory function to get a remote storage instance.

    Raises:
        ValueError: If the provider is not recognized
    """
    if destination.provider in ("s3", "r2", "b2"):
        return S3CompatibleStorage(destination, timeout=timeout)
    raise ValueError(f"Unknown storage provider: {destination.provider}")
