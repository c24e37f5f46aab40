"""
Storm Users API

Storm account lifecycle for enterprise owners.

Endpoints:
- POST   /storm_users/{account_id}: provision a storm account
- DELETE /storm_users/{account_id}: remove it
- PATCH  /storm_users/{account_id}: change its bandrate
- PATCH  /enterprises/{enterprise_id}/storm_users/settings: set every
  storm account of the enterprise, and the default, to one bandrate
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storm.database import get_db
from storm.dependencies import get_current_account, get_locks, get_provisioning_client
from storm.models import Account
from storm.services.locks import KeyedLocks
from storm.services.provisioning_client import ProvisioningClient
from storm.services.synchronizer import StormUserSynchronizer

router = APIRouter(tags=["storm-users"])


class StormUserCreate(BaseModel):
    # Any on purpose: "100" must reach admission and fail as invalid_bandrate
    bandrate: Any = None
    storm_server_id: Optional[int] = None


class StormUserUpdate(BaseModel):
    bandrate: Any = None


def get_synchronizer(
    db: Session = Depends(get_db),
    client: ProvisioningClient = Depends(get_provisioning_client),
    locks: KeyedLocks = Depends(get_locks),
) -> StormUserSynchronizer:
    return StormUserSynchronizer(db, client, locks)


@router.post("/storm_users/{account_id}")
def create_storm_user(
    account_id: int,
    request: Optional[StormUserCreate] = None,
    current_account: Account = Depends(get_current_account),
    synchronizer: StormUserSynchronizer = Depends(get_synchronizer),
):
    request = request or StormUserCreate()
    storm_account = synchronizer.create(
        current_account,
        account_id,
        bandrate=request.bandrate,
        storm_server_id=request.storm_server_id,
    )
    return {"account_id": account_id, "storm_user": storm_account.as_dict()}


@router.delete("/storm_users/{account_id}")
def destroy_storm_user(
    account_id: int,
    current_account: Account = Depends(get_current_account),
    synchronizer: StormUserSynchronizer = Depends(get_synchronizer),
):
    status = synchronizer.destroy(current_account, account_id)
    return {"account_id": account_id, "status": status}


@router.patch("/storm_users/{account_id}")
def update_storm_user(
    account_id: int,
    request: StormUserUpdate,
    current_account: Account = Depends(get_current_account),
    synchronizer: StormUserSynchronizer = Depends(get_synchronizer),
):
    storm_account = synchronizer.update(current_account, account_id, request.bandrate)
    return {"account_id": account_id, "storm_user": storm_account.as_dict()}


@router.patch("/enterprises/{enterprise_id}/storm_users/settings")
def bulk_update_storm_users(
    enterprise_id: int,
    request: StormUserUpdate,
    current_account: Account = Depends(get_current_account),
    synchronizer: StormUserSynchronizer = Depends(get_synchronizer),
):
    settings = synchronizer.bulk_update(current_account, enterprise_id, request.bandrate)
    return {"id": enterprise_id, "settings": {"storm": settings.as_dict()}}
