"""
Storm Transfer API

Endpoints:
- GET  /storm/download_path/{resource_id}: absolute path and name of a
  primary-tier file for the storm client
- POST /storm/move_to_storm: stage a to_storm job (202)
- POST /storm/move_to_primary: stage a to_primary job (202)
- POST /storm/move_finished: completion callback from the storm server
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storm.database import get_db
from storm.dependencies import (
    get_callback_token,
    get_current_account,
    get_locks,
    get_primary_store,
    get_provisioning_client,
)
from storm.models import Account
from storm.services.locks import KeyedLocks
from storm.services.migration import MigrationCoordinator
from storm.services.primary_store import PrimaryStore
from storm.services.provisioning_client import ProvisioningClient

router = APIRouter(prefix="/storm", tags=["storm-transfers"])


class MoveToStormRequest(BaseModel):
    resource_id: str
    name: Optional[str] = None


class MoveToPrimaryRequest(BaseModel):
    folder_id: str
    name: Optional[str] = None
    path: Optional[str] = None


class MoveFinished(BaseModel):
    """Callback payload sent by the storm server"""
    act: Optional[str] = None
    jid: Optional[str] = None
    name: Optional[str] = None
    path: Optional[str] = None
    user: Optional[str] = None
    error: Optional[str] = None


def get_migration(
    db: Session = Depends(get_db),
    client: ProvisioningClient = Depends(get_provisioning_client),
    primary_store: PrimaryStore = Depends(get_primary_store),
    locks: KeyedLocks = Depends(get_locks),
    callback_token: str = Depends(get_callback_token),
) -> MigrationCoordinator:
    return MigrationCoordinator(db, client, primary_store, locks, callback_token=callback_token)


@router.get("/download_path/{resource_id}")
def download_path(
    resource_id: str,
    user: Optional[str] = None,
    current_account: Account = Depends(get_current_account),
    migration: MigrationCoordinator = Depends(get_migration),
):
    return migration.resolve_download_path(current_account, resource_id, user)


@router.post("/move_to_storm", status_code=202)
def move_to_storm(
    request: MoveToStormRequest,
    current_account: Account = Depends(get_current_account),
    migration: MigrationCoordinator = Depends(get_migration),
):
    job = migration.request_to_storm(current_account, request.resource_id, request.name)
    return job.as_dict()


@router.post("/move_to_primary", status_code=202)
def move_to_primary(
    request: MoveToPrimaryRequest,
    current_account: Account = Depends(get_current_account),
    migration: MigrationCoordinator = Depends(get_migration),
):
    job = migration.request_to_primary(current_account, request.folder_id, request.name, request.path)
    return job.as_dict()


@router.post("/move_finished")
def move_finished(
    request: MoveFinished,
    x_storm_callback_token: Optional[str] = Header(default=None),
    migration: MigrationCoordinator = Depends(get_migration),
):
    job = migration.complete(
        action=request.act,
        job_id=request.jid,
        name=request.name,
        path=request.path,
        user=request.user,
        error=request.error,
        callback_token=x_storm_callback_token,
    )
    return {"status": job.state.value, "job_id": job.job_id}
