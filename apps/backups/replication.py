"""
Replication of completed artifacts to remote object stores.

Destinations are independent: one failing never stops the others, and no
failure here fails the backup. A ``RemoteCopy`` is recorded only after the
remote object has been verified against the local file.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .conf import Destination
from .exceptions import BackupError, UploadFailure
from .models import Backup, RemoteCopy
from .storage import RemoteStorage, get_remote_storage

logger = logging.getLogger(__name__)


@dataclass
class ReplicationResult:
    destination: str
    ok: bool
    location_uri: str = ""
    error: Optional[str] = None


class Replicator:
    def __init__(
        self,
        destinations: Sequence[Destination],
        timeout: float = 1800,
        storage_factory: Optional[Callable[[Destination], RemoteStorage]] = None,
    ):
        self.destinations = list(destinations)
        self.timeout = timeout
        self.storage_factory = storage_factory or (
            lambda destination: get_remote_storage(destination, timeout=self.timeout)
        )

    def replicate(self, backup: Backup, local_file: Path) -> List[ReplicationResult]:
        """Upload ``local_file`` to every destination; never raises for a destination failure."""
        results = []
        for destination in self.destinations:
            try:
                remote_copy = self.replicate_to(destination, backup, Path(local_file))
                results.append(
                    ReplicationResult(
                        destination=destination.name, ok=True, location_uri=remote_copy.location_uri
                    )
                )
            except (BackupError, ValueError) as e:
                logger.error(f"Replication of backup {backup.id} to {destination.name} failed: {e}")
                results.append(ReplicationResult(destination=destination.name, ok=False, error=str(e)))
            except Exception as e:
                logger.exception(
                    f"Unexpected error replicating backup {backup.id} to {destination.name}"
                )
                results.append(
                    ReplicationResult(destination=destination.name, ok=False, error=f"{type(e).__name__}: {e}")
                )

        succeeded = sum(1 for result in results if result.ok)
        if self.destinations:
            logger.info(
                f"Backup {backup.id} replicated to {succeeded}/{len(self.destinations)} destination(s)"
            )
        return results

    def replicate_to(self, destination: Destination, backup: Backup, local_file: Path) -> RemoteCopy:
        """
        Upload and verify one copy.

        Raises:
            UploadFailure: if the upload fails or the remote object doesn't match
            BackupTimeout: if the upload exceeds its time budget
        """
        storage = self.storage_factory(destination)
        key = storage.key_for(backup.tier, local_file.name)
        local_size = local_file.stat().st_size

        storage.upload(local_file, key, metadata={"sha256": backup.checksum, "backup-id": backup.id})

        info = storage.head(key)
        if info is None:
            raise UploadFailure(f"{key} is missing on {destination.name} after upload", destination.name)
        if info["size"] != local_size:
            raise UploadFailure(
                f"Remote copy on {destination.name} is truncated: "
                f"{info['size']} bytes, expected {local_size}",
                destination.name,
            )
        remote_checksum = (info.get("metadata") or {}).get("sha256", "")
        if remote_checksum != backup.checksum:
            raise UploadFailure(
                f"Remote copy on {destination.name} has checksum {remote_checksum or 'none'}, "
                f"expected {backup.checksum}",
                destination.name,
            )

        remote_copy = RemoteCopy.objects.create(
            backup=backup,
            destination=destination.name,
            provider=destination.provider,
            location_uri=storage.location_uri(key),
            encryption_scheme=destination.server_side_encryption,
            size_bytes=info["size"],
        )
        logger.info(f"Backup {backup.id} verified on {destination.name}: {remote_copy.location_uri}")
        return remote_copy
