"""
Migration Coordinator

Two-phase transfers between the primary tier and storm:

to_storm (download to the storm client):
1. Client asks to send a primary-tier file; a job manifest is staged and
   the storm server is told to fetch it (move_to_storm, expects 201)
2. Storm server calls back with act=move_to_storm; the file is moved into
   <staging_root>/<path>/<name>

to_primary (upload from the storm client):
1. Client names a destination folder, a file name and a staging path; a job
   manifest is staged
2. Storm server writes into <staging_root>/<path> and calls back with
   act=move_to_primary; the staged item is moved to <folder>/<name>

The callback rejects unknown actions, unresolved users and error payloads.
Every claimed job ends completed or failed and its manifest is discarded,
so a repeated callback fails with job_not_found instead of moving twice.
"""

import hmac
import logging
import shutil
import unicodedata
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from storm.errors import (
    DownloadDestinationNotFound,
    DownloadItemNotFile,
    DownloadItemNotFound,
    InvalidAction,
    InvalidCallbackToken,
    InvalidName,
    InvalidPath,
    InvalidUser,
    ItemAlreadyExists,
    JobNotFound,
    MoveToStormError,
    StormServerError,
    UploadDestinationNotFolder,
    UploadDestinationNotFound,
    UploadItemNotFound,
    UserNotFound,
)
from storm.models import Account, EventType, StormAccount, StormServer, TransferDirection, TransferState
from storm.services.locks import KeyedLocks, account_key
from storm.services.primary_store import PrimaryStore
from storm.services.provisioning_client import STATUS_CREATED, ProvisioningClient, ProvisioningError
from storm.services.registry import StormRegistry
from storm.services.transfer_jobs import JOBS_DIR_NAME, TransferJob, TransferJobStore, new_job_id

logger = logging.getLogger(__name__)

ACTION_MOVE_TO_PRIMARY = "move_to_primary"
ACTION_MOVE_TO_STORM = "move_to_storm"

CALLBACK_ACTIONS = {
    ACTION_MOVE_TO_PRIMARY: TransferDirection.TO_PRIMARY,
    "move_to_cokiba": TransferDirection.TO_PRIMARY,  # legacy storm server builds
    ACTION_MOVE_TO_STORM: TransferDirection.TO_STORM,
}


def normalize_name(name: str) -> str:
    # macOS clients send NFD
    return unicodedata.normalize("NFC", name)


def check_name(name: Optional[str]) -> str:
    raw = normalize_name(str(name or "").strip())
    if not raw or raw in (".", "..") or "/" in raw or "\\" in raw or "\x00" in raw:
        raise InvalidName()
    return raw


def staging_target(server: StormServer, path: Optional[str]) -> Tuple[str, Path]:
    """Validate a staging path; returns (normalized relative path, absolute path)."""
    raw = str(path or "").strip()
    if not raw:
        raise InvalidPath("path is required")
    relative = PurePosixPath(raw)
    if (
        relative.is_absolute()
        or not relative.parts
        or ".." in relative.parts
        or relative.parts[0] == JOBS_DIR_NAME
    ):
        raise InvalidPath()
    root = Path(server.staging_root).resolve()
    target = (root / str(relative)).resolve()
    if root not in target.parents:
        raise InvalidPath()
    return str(relative), target


class MigrationCoordinator:
    def __init__(
        self,
        db: Session,
        client: ProvisioningClient,
        primary_store: PrimaryStore,
        locks: KeyedLocks,
        callback_token: str = "",
    ):
        self.db = db
        self.client = client
        self.primary_store = primary_store
        self.locks = locks
        self.callback_token = callback_token or ""
        self.registry = StormRegistry(db)

    def _own_storm_account(self, requester: Account) -> StormAccount:
        storm_account = self.registry.get_by_account(requester.id)
        if storm_account is None:
            raise UserNotFound(f"Account {requester.id} has no storm user")
        return storm_account

    def _source_file(self, account_id: int, resource_id: str) -> Path:
        source = self.primary_store.resolve(account_id, resource_id)
        if not source.exists():
            raise DownloadItemNotFound()
        if not source.is_file():
            raise DownloadItemNotFile()
        return source

    def _commit_event(self, event_type: EventType, message: str, account_id: int, job_id: str) -> None:
        self.registry.log_event(event_type, message, account_id=account_id, job_id=job_id)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ========================================================================
    # INITIATION
    # ========================================================================

    def request_to_storm(self, requester: Account, resource_id: str, name: Optional[str] = None) -> TransferJob:
        """Stage a job for a primary-tier file and ask the storm server to fetch it."""
        with self.locks.lock(account_key(requester.id)):
            storm_account = self._own_storm_account(requester)
            server = storm_account.storm_server
            source = self._source_file(requester.id, resource_id)
            final_name = check_name(name) if name else normalize_name(source.name)

            jobs = TransferJobStore(server.staging_root)
            job = jobs.create(TransferJob(
                job_id=new_job_id(),
                direction=TransferDirection.TO_STORM,
                account_id=requester.id,
                storm_account_name=storm_account.name,
                resource_id=resource_id,
                name=final_name,
            ))

            try:
                response = self.client.move_to_storm(server, storm_account.remote_user_id, job.as_dict())
            except ProvisioningError as e:
                jobs.discard(job.job_id)
                raise MoveToStormError(f"move_to_storm on {server.name}: {e}")
            if not response.is_status(STATUS_CREATED):
                jobs.discard(job.job_id)
                logger.error(f"move_to_storm for job {job.job_id} answered {response.status_code}")
                raise MoveToStormError(f"Storm server answered {response.status_code}")

            self._commit_event(
                EventType.TRANSFER_REQUESTED,
                f"to_storm job {job.job_id}: '{final_name}' for {storm_account.name}",
                requester.id,
                job.job_id,
            )
            return job

    def request_to_primary(self, requester: Account, folder_id: str, name: Optional[str], path: Optional[str]) -> TransferJob:
        """Stage a job that will place storm content into a primary-tier folder."""
        with self.locks.lock(account_key(requester.id)):
            storm_account = self._own_storm_account(requester)
            server = storm_account.storm_server

            folder = self.primary_store.resolve(requester.id, folder_id)
            if not folder.exists():
                raise UploadDestinationNotFound()
            if not folder.is_dir():
                raise UploadDestinationNotFolder()
            final_name = check_name(name)
            relative, _ = staging_target(server, path)

            job = TransferJobStore(server.staging_root).create(TransferJob(
                job_id=new_job_id(),
                direction=TransferDirection.TO_PRIMARY,
                account_id=requester.id,
                storm_account_name=storm_account.name,
                resource_id=folder_id,
                name=final_name,
                staging_path=relative,
            ))
            self._commit_event(
                EventType.TRANSFER_REQUESTED,
                f"to_primary job {job.job_id}: '{final_name}' from {relative} for {storm_account.name}",
                requester.id,
                job.job_id,
            )
            return job

    def resolve_download_path(self, requester: Account, resource_id: str, user: Optional[str]) -> Dict[str, str]:
        if not str(user or "").strip():
            raise InvalidUser()
        storm_account = self.registry.get_by_name(str(user).strip())
        if storm_account is None or storm_account.account_id != requester.id:
            raise UserNotFound(f"Storm user '{user}' not found")
        source = self._source_file(requester.id, resource_id)
        return {"path": str(source), "name": normalize_name(source.name)}

    # ========================================================================
    # COMPLETION CALLBACK
    # ========================================================================

    def _check_callback_token(self, token: Optional[str]) -> None:
        if not self.callback_token:
            return
        if not token or not hmac.compare_digest(str(token), self.callback_token):
            raise InvalidCallbackToken()

    def _finish_to_primary(self, job: TransferJob, server: StormServer, name: Optional[str], path: Optional[str]) -> Path:
        final_name = check_name(name)
        relative, source = staging_target(server, path)
        if job.staging_path and relative != job.staging_path:
            raise InvalidPath(f"path '{relative}' does not match the staged path of job {job.job_id}")
        if not source.exists():
            raise UploadItemNotFound()
        folder = self.primary_store.resolve(job.account_id, job.resource_id)
        if not folder.is_dir():
            raise UploadDestinationNotFound()
        destination = folder / final_name
        if destination.exists():
            raise ItemAlreadyExists()
        shutil.move(str(source), str(destination))
        return destination

    def _finish_to_storm(self, job: TransferJob, server: StormServer, name: Optional[str], path: Optional[str]) -> Path:
        source = self.primary_store.resolve(job.account_id, job.resource_id)
        if not source.is_file():
            raise DownloadItemNotFound()
        _, target_dir = staging_target(server, path)
        if not target_dir.is_dir():
            raise DownloadDestinationNotFound()
        final_name = check_name(name) if name else check_name(job.name or source.name)
        destination = target_dir / final_name
        if destination.exists():
            raise ItemAlreadyExists()
        shutil.move(str(source), str(destination))
        return destination

    def complete(
        self,
        action: Optional[str],
        job_id: Optional[str],
        name: Optional[str],
        path: Optional[str],
        user: Optional[str],
        error: Optional[str],
        callback_token: Optional[str] = None,
    ) -> TransferJob:
        """
        Finalize a transfer job reported done by the storm server.

        Returns:
            The resolved job (state COMPLETED)

        Raises:
            MigrationError subclasses; the job is resolved FAILED for any
            error raised after it was claimed
        """
        self._check_callback_token(callback_token)

        direction = CALLBACK_ACTIONS.get(str(action or "").strip())
        if direction is None:
            raise InvalidAction(f"Unknown action '{action}'")
        if not str(user or "").strip():
            raise InvalidUser()
        user = str(user).strip()

        storm_account = self.registry.get_by_name(user)
        if storm_account is None:
            raise UserNotFound(f"Storm user '{user}' not found")

        with self.locks.lock(account_key(storm_account.account_id)):
            # A destroy may have won the lock first
            self.db.expire_all()
            storm_account = self.registry.get_by_name(user)
            if storm_account is None:
                raise UserNotFound(f"Storm user '{user}' not found")
            server = storm_account.storm_server
            jobs = TransferJobStore(server.staging_root)

            pending = jobs.get(job_id)
            if pending is None:
                raise JobNotFound(f"Transfer job {job_id} does not exist or was already completed")
            if pending.storm_account_name != storm_account.name:
                raise UserNotFound(f"Transfer job {job_id} does not belong to '{user}'")
            if pending.direction != direction:
                raise InvalidAction(f"Job {job_id} is {pending.direction.value}, callback reported {action}")

            job = jobs.claim(job_id)
            try:
                if error:
                    raise StormServerError(f"Storm server reported: {error}")
                if direction == TransferDirection.TO_PRIMARY:
                    destination = self._finish_to_primary(job, server, name, path)
                else:
                    destination = self._finish_to_storm(job, server, name, path)
            except Exception as e:
                jobs.resolve(job, TransferState.FAILED)
                logger.warning(f"Transfer job {job.job_id} failed: {e}")
                self._commit_event(
                    EventType.TRANSFER_FAILED,
                    f"{job.direction.value} job {job.job_id} failed: {e}",
                    job.account_id,
                    job.job_id,
                )
                raise

            jobs.resolve(job, TransferState.COMPLETED)
            self._commit_event(
                EventType.TRANSFER_COMPLETED,
                f"{job.direction.value} job {job.job_id} moved to {destination}",
                job.account_id,
                job.job_id,
            )
            return job
