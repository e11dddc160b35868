"""
Pytest configuration and fixtures for backup tests.

No test talks to MongoDB or an object store: ``FakeRunner`` stands in for
mongodump/mongorestore and ``FakeRemoteStorage`` for S3-compatible buckets.
"""

import os
from pathlib import Path

from django.utils import timezone

import pytest

from apps.backups.conf import validate_backup_settings
from apps.backups.encryption import calculate_checksum
from apps.backups.exceptions import BackupTimeout, UploadFailure
from apps.backups.models import Backup
from apps.backups.notifiers import Notifier
from apps.backups.process import COMMAND_NOT_FOUND, ProcessResult, ProcessRunner
from apps.backups.services import BackupService
from apps.backups.storage import LocalArtifactStore, RemoteStorage


def _option(args, name):
    prefix = f"--{name}="
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix) :]
    return None


class FakeRunner(ProcessRunner):
    """
    Records every command and simulates the database tools.

    mongodump writes ``<out>/<db>/<collection>.bson`` files; mongorestore
    records the dump tree it was pointed at.
    """

    def __init__(self):
        self.calls = []
        self.databases = {"testdb": ["users", "orders"]}
        self.dump_returncode = 0
        self.dump_timeout = False
        self.empty_dump = False
        self.restore_returncode = 0
        self.restore_timeout = False
        self.restored_trees = []
        self.missing = set()

    def commands(self, program):
        return [call for call in self.calls if os.path.basename(call[0]) == program]

    def run(self, args, timeout, env=None, phase=None):
        args = list(args)
        self.calls.append(args)
        program = os.path.basename(args[0])

        if program in self.missing:
            return ProcessResult(returncode=COMMAND_NOT_FOUND, stderr=f"{program}: command not found")
        if "--version" in args:
            return ProcessResult(returncode=0, stdout=f"{program} version: 100.9.4\ngit version: abc\n")
        if program == "mongodump":
            return self._dump(args, timeout)
        if program == "mongorestore":
            return self._restore(args, timeout)
        return ProcessResult(returncode=COMMAND_NOT_FOUND, stderr=f"{program}: command not found")

    def _dump(self, args, timeout):
        out = Path(_option(args, "out"))
        out.mkdir(parents=True, exist_ok=True)

        if self.dump_timeout:
            (out / "testdb").mkdir(exist_ok=True)
            (out / "testdb" / "users.bson").write_bytes(b"partial")
            raise BackupTimeout("mongodump did not finish", phase="dump", seconds=timeout)
        if self.dump_returncode:
            (out / "testdb").mkdir(exist_ok=True)
            (out / "testdb" / "users.bson").write_bytes(b"partial")
            return ProcessResult(
                returncode=self.dump_returncode, stderr="Failed: error connecting to db server"
            )
        if self.empty_dump:
            return ProcessResult(returncode=0)

        for database, collections in self.databases.items():
            (out / database).mkdir(exist_ok=True)
            for collection in collections:
                (out / database / f"{collection}.bson").write_bytes(os.urandom(2048))
                (out / database / f"{collection}.metadata.json").write_text('{"indexes": []}')
        if "--oplog" in args:
            (out / "oplog.bson").write_bytes(b"oplog")
        return ProcessResult(returncode=0, duration_seconds=0.5)

    def _restore(self, args, timeout):
        dump_dir = Path(_option(args, "dir"))
        self.restored_trees.append(
            sorted(p.relative_to(dump_dir).as_posix() for p in dump_dir.rglob("*") if p.is_file())
        )
        if self.restore_timeout:
            raise BackupTimeout("mongorestore did not finish", phase="restore", seconds=timeout)
        if self.restore_returncode:
            return ProcessResult(returncode=self.restore_returncode, stderr="Failed: duplicate key")
        return ProcessResult(returncode=0, duration_seconds=1.0)


class FakeRemoteStorage(RemoteStorage):
    """In-memory object store keyed by object key."""

    def __init__(self, destination, fail_upload=False, truncate=False, drop_checksum=False):
        super().__init__(destination)
        self.provider = destination.provider
        self.objects = {}
        self.fail_upload = fail_upload
        self.truncate = truncate
        self.drop_checksum = drop_checksum
        self.downloads = []

    def upload(self, local_path, key, metadata):
        if self.fail_upload:
            raise UploadFailure(f"Upload of {key} to {self.name} failed: AccessDenied", self.name)
        data = Path(local_path).read_bytes()
        if self.truncate:
            data = data[: len(data) // 2]
        if self.drop_checksum:
            metadata = {k: v for k, v in metadata.items() if k != "sha256"}
        self.objects[key] = (data, dict(metadata))

    def head(self, key):
        if key not in self.objects:
            return None
        data, metadata = self.objects[key]
        return {"size": len(data), "metadata": metadata, "server_side_encryption": "AES256"}

    def download(self, key, local_path):
        self.downloads.append(key)
        if key not in self.objects:
            return False
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_bytes(self.objects[key][0])
        return True


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)
        return True


@pytest.fixture
def backup_root(settings, tmp_path):
    root = tmp_path / "backups"
    settings.BACKUP_LOCAL_PATH = str(root)
    return root


@pytest.fixture
def backup_settings(backup_root):
    return validate_backup_settings()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def remote_stores():
    """Destination name -> FakeRemoteStorage, created on first use."""
    return {}


@pytest.fixture
def storage_factory(remote_stores):
    def factory(destination):
        if destination.name not in remote_stores:
            remote_stores[destination.name] = FakeRemoteStorage(destination)
        return remote_stores[destination.name]

    return factory


@pytest.fixture
def make_service(backup_settings, fake_runner, notifier, storage_factory):
    def factory(conf=None, **kwargs):
        kwargs.setdefault("runner", fake_runner)
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("storage_factory", storage_factory)
        kwargs.setdefault("owner", "pytest")
        return BackupService(conf or backup_settings, **kwargs)

    return factory


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def store(backup_settings):
    store = LocalArtifactStore(backup_settings.local_path)
    store.ensure_layout()
    return store


@pytest.fixture
def make_backup(store):
    """Create a COMPLETED backup record with a local artifact file."""

    def factory(tier="daily", created_at=None, content=b"artifact-bytes", with_file=True, **fields):
        backup = Backup(
            tier=tier,
            status=fields.pop("status", Backup.COMPLETED),
            created_at=created_at or timezone.now(),
            completed_at=timezone.now(),
            **fields,
        )
        if with_file:
            path = store.new_artifact_path(tier, backup.filename)
            path.write_bytes(content)
            backup.local_path = store.relative_path(path)
            backup.size_bytes = len(content)
            backup.checksum = calculate_checksum(path)
        backup.save(force_insert=True)
        return backup

    return factory
