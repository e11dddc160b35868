"""
Count-based retention of local artifacts per tier.

Only local files are evicted. Backup records stay (with ``local_path``
cleared) so their remote copies remain listed; remote copies are never
deleted here.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List

from .conf import TIERS
from .exceptions import RetentionCleanupFailure
from .models import Backup
from .storage import LocalArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    tier: str
    limit: int
    retained: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionManager:
    def __init__(self, store: LocalArtifactStore, retention: Dict[str, int]):
        self.store = store
        self.retention = retention

    def enforce(self, tier: str) -> RetentionResult:
        """
        Keep the newest N retained artifacts of ``tier`` and evict the rest.

        With N <= 0 an artifact is evicted only if it has a remote copy, so the
        last existing copy of a backup is never deleted. Deletion failures are
        recorded and logged, never raised.
        """
        if tier not in TIERS:
            raise ValueError(f"Unknown backup tier: {tier}")

        limit = self.retention.get(tier, 0)
        candidates = list(
            Backup.objects.retained(tier).order_by("-created_at", "-id").prefetch_related("remote_copies")
        )
        result = RetentionResult(tier=tier, limit=limit)

        keep_count = max(limit, 0)
        result.retained = [backup.id for backup in candidates[:keep_count]]

        for backup in candidates[keep_count:]:
            if limit <= 0 and not backup.remote_copies.all():
                logger.warning(
                    f"Retention for {tier} is {limit}, but backup {backup.id} has no remote copy; keeping it"
                )
                result.skipped.append(backup.id)
                result.retained.append(backup.id)
                continue

            try:
                self._evict(backup)
                result.deleted.append(backup.id)
            except RetentionCleanupFailure as e:
                logger.error(str(e))
                result.failed.append({"backup_id": backup.id, "error": str(e)})

        logger.info(
            f"Retention for {tier} (keep {limit}): retained={len(result.retained)} "
            f"deleted={len(result.deleted)} failed={len(result.failed)} skipped={len(result.skipped)}"
        )
        return result

    def _evict(self, backup: Backup):
        if not self.store.delete(backup.local_path):
            raise RetentionCleanupFailure(
                f"Failed to delete local artifact {backup.local_path} of backup {backup.id}"
            )
        backup.local_path = ""
        backup.save(update_fields=["local_path"])
        logger.info(f"Evicted local artifact of backup {backup.id}")
