"""
Migration coordinator: job staging, the completion callback and the
file moves in both directions.
"""
import threading
import unicodedata
from contextlib import contextmanager
from pathlib import Path

import pytest
from sqlalchemy import select

from conftest import add_account, add_storm_account
from storm.errors import (
    DownloadItemNotFile,
    DownloadItemNotFound,
    InvalidAction,
    InvalidCallbackToken,
    InvalidJobId,
    InvalidName,
    InvalidPath,
    InvalidUser,
    ItemAlreadyExists,
    JobNotFound,
    MoveToStormError,
    StormServerError,
    UploadDestinationNotFolder,
    UploadItemNotFound,
    UserNotFound,
)
from storm.models import EventType, StormEvent, TransferDirection, TransferState
from storm.services.locks import KeyedLocks, account_key
from storm.services.migration import MigrationCoordinator, check_name, normalize_name
from storm.services.provisioning_client import RemoteResponse
from storm.services.synchronizer import StormUserSynchronizer
from storm.services.transfer_jobs import TransferJobStore

NFD_NAME = unicodedata.normalize("NFD", "Café.txt")
NFC_NAME = unicodedata.normalize("NFC", "Café.txt")


@pytest.fixture
def migration(db, remote, primary_store, locks):
    return MigrationCoordinator(db, remote, primary_store, locks)


@pytest.fixture
def storm_owner(db, owner, storm_server):
    """The owner account with a registered storm user"""
    return add_storm_account(db, owner, storm_server)


def _event_types(db):
    return [event.event_type for event in db.scalars(select(StormEvent).order_by(StormEvent.id))]


def test_normalize_name():
    assert NFD_NAME != NFC_NAME
    assert normalize_name(NFD_NAME) == NFC_NAME
    assert check_name(NFD_NAME) == NFC_NAME


@pytest.mark.parametrize("name", ["", "  ", ".", "..", "a/b", "a\\b"])
def test_check_name_rejects(name):
    with pytest.raises(InvalidName):
        check_name(name)


class TestToPrimary:
    def test_round_trip(self, db, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "uploads/a1")
        assert job.direction == TransferDirection.TO_PRIMARY
        assert job.staging_path == "uploads/a1"

        staged = staging_root / "uploads" / "a1"
        staged.parent.mkdir(parents=True)
        staged.write_bytes(b"quarterly numbers")

        done = migration.complete("move_to_primary", job.job_id, "report.txt", "uploads/a1", storm_owner.name, None)

        assert done.state == TransferState.COMPLETED
        destination = primary_store.resolve(owner.id, folder_id) / "report.txt"
        assert destination.read_bytes() == b"quarterly numbers"
        assert not staged.exists()
        assert _event_types(db) == [EventType.TRANSFER_REQUESTED, EventType.TRANSFER_COMPLETED]

    def test_repeated_callback_is_rejected(self, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")
        (staging_root / "incoming").write_bytes(b"x")
        migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)

        with pytest.raises(JobNotFound):
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)

    def test_legacy_action_name(self, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")
        (staging_root / "incoming").write_bytes(b"x")

        done = migration.complete("move_to_cokiba", job.job_id, "report.txt", "incoming", storm_owner.name, None)
        assert done.state == TransferState.COMPLETED

    def test_nfd_name_is_stored_as_nfc(self, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, NFD_NAME, "incoming")
        (staging_root / "incoming").write_bytes(b"x")

        migration.complete("move_to_primary", job.job_id, NFD_NAME, "incoming", storm_owner.name, None)
        assert (primary_store.resolve(owner.id, folder_id) / NFC_NAME).exists()

    def test_error_payload_fails_job(self, db, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")

        with pytest.raises(StormServerError):
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, "disk full")

        assert TransferJobStore(str(staging_root)).get(job.job_id) is None
        assert _event_types(db)[-1] == EventType.TRANSFER_FAILED
        with pytest.raises(JobNotFound):
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)

    def test_missing_staged_item(self, migration, primary_store, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")
        with pytest.raises(UploadItemNotFound):
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)

    def test_destination_taken(self, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        primary_store.write_file(owner.id, "docs/report.txt", b"old")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")
        (staging_root / "incoming").write_bytes(b"new")

        with pytest.raises(ItemAlreadyExists) as excinfo:
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)
        assert excinfo.value.status_code == 409
        assert (staging_root / "incoming").exists()

    def test_callback_path_must_match_job(self, migration, primary_store, staging_root, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")
        (staging_root / "elsewhere").write_bytes(b"x")
        with pytest.raises(InvalidPath):
            migration.complete("move_to_primary", job.job_id, "report.txt", "elsewhere", storm_owner.name, None)

    @pytest.mark.parametrize("path", ["", "/etc", "../outside", "a/../../b", ".jobs/x"])
    def test_request_rejects_path(self, migration, primary_store, owner, storm_owner, path):
        folder_id = primary_store.create_folder(owner.id, "docs")
        with pytest.raises(InvalidPath):
            migration.request_to_primary(owner, folder_id, "report.txt", path)

    def test_request_rejects_file_destination(self, migration, primary_store, owner, storm_owner):
        file_id = primary_store.write_file(owner.id, "docs/report.txt", b"x")
        with pytest.raises(UploadDestinationNotFolder):
            migration.request_to_primary(owner, file_id, "report.txt", "incoming")

    def test_request_requires_storm_user(self, db, migration, primary_store, enterprise, storm_server):
        plain = add_account(db, enterprise, "plain")
        folder_id = primary_store.create_folder(plain.id, "docs")
        with pytest.raises(UserNotFound):
            migration.request_to_primary(plain, folder_id, "report.txt", "incoming")


class TestToStorm:
    def test_round_trip(self, db, migration, remote, primary_store, staging_root, owner, storm_owner):
        resource_id = primary_store.write_file(owner.id, "videos/movie.mp4", b"frames")
        job = migration.request_to_storm(owner, resource_id)

        (_, _, remote_user_id, payload), = remote.called("move_to_storm")
        assert remote_user_id == storm_owner.remote_user_id
        assert payload["job_id"] == job.job_id
        assert payload["name"] == "movie.mp4"

        (staging_root / "outbox").mkdir()
        done = migration.complete("move_to_storm", job.job_id, None, "outbox", storm_owner.name, None)

        assert done.state == TransferState.COMPLETED
        assert (staging_root / "outbox" / "movie.mp4").read_bytes() == b"frames"
        assert not primary_store.resolve(owner.id, resource_id).exists()

    def test_remote_refusal_discards_job(self, db, migration, remote, primary_store, staging_root, owner, storm_owner):
        resource_id = primary_store.write_file(owner.id, "movie.mp4", b"frames")
        remote.move_to_storm_response = RemoteResponse(status_code=500)

        with pytest.raises(MoveToStormError):
            migration.request_to_storm(owner, resource_id)
        assert list((staging_root / ".jobs").glob("*.json")) == []
        assert _event_types(db) == []

    def test_folder_is_not_downloadable(self, migration, primary_store, owner, storm_owner):
        folder_id = primary_store.create_folder(owner.id, "docs")
        with pytest.raises(DownloadItemNotFile):
            migration.request_to_storm(owner, folder_id)

    def test_direction_mismatch_keeps_job_pending(self, migration, primary_store, staging_root, owner, storm_owner):
        resource_id = primary_store.write_file(owner.id, "movie.mp4", b"frames")
        job = migration.request_to_storm(owner, resource_id)

        with pytest.raises(InvalidAction):
            migration.complete("move_to_primary", job.job_id, "movie.mp4", "outbox", storm_owner.name, None)
        assert TransferJobStore(str(staging_root)).get(job.job_id) is not None


class TestCallbackChecks:
    def test_unknown_action(self, migration, storm_owner):
        with pytest.raises(InvalidAction):
            migration.complete("move_elsewhere", "0" * 32, "a", "b", storm_owner.name, None)

    def test_blank_user(self, migration):
        with pytest.raises(InvalidUser):
            migration.complete("move_to_primary", "0" * 32, "a", "b", " ", None)

    def test_unknown_user(self, migration):
        with pytest.raises(UserNotFound):
            migration.complete("move_to_primary", "0" * 32, "a", "b", "storm-9999", None)

    @pytest.mark.parametrize("job_id", ["", "not-a-job", "../../etc/passwd"])
    def test_malformed_job_id(self, migration, storm_owner, job_id):
        with pytest.raises(InvalidJobId) as excinfo:
            migration.complete("move_to_primary", job_id, "a", "b", storm_owner.name, None)
        assert excinfo.value.code == "invalid_jid"

    def test_job_of_other_user(self, db, migration, primary_store, staging_root, enterprise, owner, storm_owner, storm_server):
        other = add_account(db, enterprise, "other")
        other_storm = add_storm_account(db, other, storm_server)
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = migration.request_to_primary(owner, folder_id, "report.txt", "incoming")

        with pytest.raises(UserNotFound):
            migration.complete("move_to_primary", job.job_id, "report.txt", "incoming", other_storm.name, None)
        assert TransferJobStore(str(staging_root)).get(job.job_id) is not None

    def test_callback_token(self, db, remote, primary_store, locks, staging_root, owner, storm_owner):
        guarded = MigrationCoordinator(db, remote, primary_store, locks, callback_token="s3cret")
        folder_id = primary_store.create_folder(owner.id, "docs")
        job = guarded.request_to_primary(owner, folder_id, "report.txt", "incoming")
        (staging_root / "incoming").write_bytes(b"x")

        with pytest.raises(InvalidCallbackToken):
            guarded.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None)
        with pytest.raises(InvalidCallbackToken):
            guarded.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None,
                             callback_token="wrong")

        done = guarded.complete("move_to_primary", job.job_id, "report.txt", "incoming", storm_owner.name, None,
                                callback_token="s3cret")
        assert done.state == TransferState.COMPLETED

class _ObservedLocks(KeyedLocks):
    """Signals when a worker thread starts waiting for a key"""

    def __init__(self):
        super().__init__()
        self.waiting = threading.Event()

    @contextmanager
    def lock(self, key):
        if threading.current_thread() is not threading.main_thread():
            self.waiting.set()
        with super().lock(key):
            yield


class TestDestroyedUser:
    def _stage_job(self, db, migration, primary_store, staging_root, account, storm_server):
        storm_account = add_storm_account(db, account, storm_server)
        folder_id = primary_store.create_folder(account.id, "docs")
        job = migration.request_to_primary(account, folder_id, "report.txt", "incoming")
        (staging_root / "incoming").write_bytes(b"x")
        return storm_account.name, folder_id, job.job_id

    def test_callback_after_destroy(self, db, remote, locks, migration, primary_store, staging_root, owner, target_account, storm_server):
        name, folder_id, job_id = self._stage_job(db, migration, primary_store, staging_root, target_account, storm_server)

        StormUserSynchronizer(db, remote, locks).destroy(owner, target_account.id)

        with pytest.raises(UserNotFound):
            migration.complete("move_to_primary", job_id, "report.txt", "incoming", name, None)
        assert (staging_root / "incoming").exists()
        assert not (primary_store.resolve(target_account.id, folder_id) / "report.txt").exists()

    def test_destroy_holding_the_lock_beats_callback(
        self, db, session_factory, remote, primary_store, staging_root, owner, target_account, storm_server
    ):
        locks = _ObservedLocks()
        migration = MigrationCoordinator(db, remote, primary_store, locks)
        name, folder_id, job_id = self._stage_job(db, migration, primary_store, staging_root, target_account, storm_server)
        errors = []

        def callback():
            session = session_factory()
            try:
                MigrationCoordinator(session, remote, primary_store, locks).complete(
                    "move_to_primary", job_id, "report.txt", "incoming", name, None
                )
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        worker = threading.Thread(target=callback)
        with locks.lock(account_key(target_account.id)):
            worker.start()
            assert locks.waiting.wait(timeout=5)
            StormUserSynchronizer(db, remote, locks).destroy(owner, target_account.id)
        worker.join(timeout=10)

        assert [type(e) for e in errors] == [UserNotFound]
        assert (staging_root / "incoming").exists()
        assert not (primary_store.resolve(target_account.id, folder_id) / "report.txt").exists()
        assert TransferJobStore(str(staging_root)).get(job_id) is None



class TestDownloadPath:
    def test_resolves_file(self, migration, primary_store, owner, storm_owner):
        resource_id = primary_store.write_file(owner.id, f"docs/{NFD_NAME}", b"x")
        result = migration.resolve_download_path(owner, resource_id, storm_owner.name)
        assert result["name"] == NFC_NAME
        assert Path(result["path"]) == primary_store.resolve(owner.id, resource_id)
        assert Path(result["path"]).read_bytes() == b"x"

    def test_missing_item(self, migration, primary_store, owner, storm_owner):
        resource_id = primary_store.encode_id("docs/none.txt")
        with pytest.raises(DownloadItemNotFound):
            migration.resolve_download_path(owner, resource_id, storm_owner.name)

    def test_user_required(self, migration, primary_store, owner, storm_owner):
        resource_id = primary_store.write_file(owner.id, "a.txt", b"x")
        with pytest.raises(InvalidUser):
            migration.resolve_download_path(owner, resource_id, None)

    def test_user_must_be_requester(self, db, migration, primary_store, enterprise, owner, storm_owner, storm_server):
        other = add_account(db, enterprise, "other")
        other_storm = add_storm_account(db, other, storm_server)
        resource_id = primary_store.write_file(owner.id, "a.txt", b"x")
        with pytest.raises(UserNotFound):
            migration.resolve_download_path(owner, resource_id, other_storm.name)
