"""
Transfer Job Store

Transfer jobs live only as JSON manifests under the storm server's staging
root (<staging_root>/.jobs/<job_id>.json). A job is claimed by renaming its
manifest; the rename is atomic, so a job can be claimed once even when
callbacks race across processes. Claimed manifests are deleted when the job
is resolved.
"""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from storm.errors import InvalidJobId, JobNotFound
from storm.models import TransferDirection, TransferState

logger = logging.getLogger(__name__)

JOBS_DIR_NAME = ".jobs"
_JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")


@dataclass
class TransferJob:
    job_id: str
    direction: TransferDirection
    account_id: int
    storm_account_name: str
    resource_id: str
    name: Optional[str] = None
    staging_path: Optional[str] = None
    state: TransferState = TransferState.PENDING
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["direction"] = self.direction.value
        payload["state"] = self.state.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "TransferJob":
        return cls(
            job_id=payload["job_id"],
            direction=TransferDirection(payload["direction"]),
            account_id=int(payload["account_id"]),
            storm_account_name=payload["storm_account_name"],
            resource_id=payload["resource_id"],
            name=payload.get("name"),
            staging_path=payload.get("staging_path"),
            state=TransferState(payload.get("state", TransferState.PENDING.value)),
            created_at=payload.get("created_at") or datetime.utcnow().isoformat(),
        )


def new_job_id() -> str:
    return uuid.uuid4().hex


class TransferJobStore:
    def __init__(self, staging_root: str):
        self.staging_root = Path(staging_root)
        self.jobs_dir = self.staging_root / JOBS_DIR_NAME

    @staticmethod
    def _check_id(job_id: str) -> str:
        raw = str(job_id or "").strip()
        if not raw:
            raise InvalidJobId()
        if not _JOB_ID_RE.match(raw):
            raise InvalidJobId(f"Job id '{raw}' is malformed")
        return raw

    def _manifest(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _claimed(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.claimed"

    def create(self, job: TransferJob) -> TransferJob:
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        manifest = self._manifest(self._check_id(job.job_id))
        tmp = manifest.with_suffix(".tmp")
        tmp.write_text(json.dumps(job.as_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, manifest)
        logger.debug(f"Staged transfer job {job.job_id} ({job.direction.value}) in {self.jobs_dir}")
        return job

    def get(self, job_id: str) -> Optional[TransferJob]:
        manifest = self._manifest(self._check_id(job_id))
        if not manifest.exists():
            return None
        return TransferJob.from_dict(json.loads(manifest.read_text(encoding="utf-8")))

    def claim(self, job_id: str) -> TransferJob:
        """Take exclusive ownership of a pending job."""
        job_id = self._check_id(job_id)
        claimed = self._claimed(job_id)
        try:
            os.rename(self._manifest(job_id), claimed)
        except FileNotFoundError:
            raise JobNotFound(f"Transfer job {job_id} does not exist or was already completed")
        return TransferJob.from_dict(json.loads(claimed.read_text(encoding="utf-8")))

    def resolve(self, job: TransferJob, state: TransferState) -> TransferJob:
        """Record the job outcome and discard its manifest."""
        job.state = state
        for path in (self._claimed(job.job_id), self._manifest(job.job_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        logger.info(f"Transfer job {job.job_id} ({job.direction.value}) {state.value}")
        return job

    def discard(self, job_id: str) -> None:
        try:
            self._manifest(self._check_id(job_id)).unlink()
        except FileNotFoundError:
            pass

    def discard_for_user(self, storm_account_name: str) -> int:
        """Drop every pending job of a storm user. Returns how many were removed."""
        if not self.jobs_dir.is_dir():
            return 0
        discarded = 0
        for manifest in sorted(self.jobs_dir.glob("*.json")):
            try:
                payload = json.loads(manifest.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            except ValueError:
                logger.warning(f"Unreadable transfer job manifest {manifest}")
                continue
            if payload.get("storm_account_name") != storm_account_name:
                continue
            try:
                manifest.unlink()
            except FileNotFoundError:
                continue
            discarded += 1
        return discarded
