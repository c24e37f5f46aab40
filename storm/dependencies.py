"""
FastAPI dependency providers.

Tests (and alternative deployments) swap any of these through
app.dependency_overrides.
"""

import threading
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from storm.config import CALLBACK_TOKEN, PRIMARY_ROOT, REMOTE_TIMEOUT_SECONDS
from storm.database import get_db
from storm.errors import Unauthenticated
from storm.models import Account
from storm.services.locks import KeyedLocks, get_keyed_locks
from storm.services.primary_store import PrimaryStore
from storm.services.provisioning_client import HttpProvisioningClient, ProvisioningClient

_client: Optional[ProvisioningClient] = None
_primary_store: Optional[PrimaryStore] = None
_providers_lock = threading.Lock()


def get_provisioning_client() -> ProvisioningClient:
    global _client
    with _providers_lock:
        if _client is None:
            _client = HttpProvisioningClient(timeout_seconds=REMOTE_TIMEOUT_SECONDS)
        return _client


def get_primary_store() -> PrimaryStore:
    global _primary_store
    with _providers_lock:
        if _primary_store is None:
            _primary_store = PrimaryStore(PRIMARY_ROOT)
        return _primary_store


def get_locks() -> KeyedLocks:
    return get_keyed_locks()


def get_callback_token() -> str:
    return CALLBACK_TOKEN


def get_current_account(
    x_account_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Account:
    """Requester identity, as asserted by the upstream authentication layer."""
    raw = str(x_account_id or "").strip()
    if not raw.isdigit():
        raise Unauthenticated()
    account = db.get(Account, int(raw))
    if account is None:
        raise Unauthenticated()
    return account
