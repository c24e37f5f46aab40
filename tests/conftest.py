"""
Shared fixtures: file-backed SQLite per test, a recording provisioning
client, primary and staging roots under tmp_path, and a TestClient wired
through dependency overrides.
"""
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storm.database import get_db
from storm.dependencies import (
    get_callback_token,
    get_locks,
    get_primary_store,
    get_provisioning_client,
)
from storm.models import Account, AccountRole, Base, Enterprise, StormAccount, StormServer
from storm.service import app
from storm.services.locks import KeyedLocks
from storm.services.primary_store import PrimaryStore
from storm.services.provisioning_client import ProvisioningClient, ProvisioningError, RemoteResponse


class FakeProvisioningClient(ProvisioningClient):
    """Records calls; each response can be replaced per test."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self._ids = itertools.count(100000001)
        self.create_response: Optional[RemoteResponse] = None
        self.destroy_response = RemoteResponse(status_code=204)
        self.update_response = RemoteResponse(status_code=204)
        self.bulk_update_response = RemoteResponse(status_code=200, body='{"bandrate": 100, "bandwidth": 0}')
        self.move_to_storm_response = RemoteResponse(status_code=201)
        self.fail_with: Optional[str] = None  # operation name raising ProvisioningError
        self.on_create = None  # runs inside create_user, before the response
        self.on_bulk_update = None  # runs inside bulk_update_users, before the response
        self.bulk_update_responses: Dict[int, RemoteResponse] = {}  # per server id

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)
        if self.fail_with == operation:
            raise ProvisioningError(f"{operation} unreachable")

    def called(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def create_user(self, server: StormServer, params: Dict[str, Any]) -> RemoteResponse:
        self._record("create_user", server.id, dict(params))
        if self.on_create is not None:
            self.on_create()
        if self.create_response is not None:
            return self.create_response
        return RemoteResponse(body=f'{{"user_id": {next(self._ids)}}}')

    def destroy_user(self, server: StormServer, remote_user_id: str) -> RemoteResponse:
        self._record("destroy_user", server.id, remote_user_id)
        return self.destroy_response

    def update_user(self, server: StormServer, remote_user_id: str, bandrate: int) -> RemoteResponse:
        self._record("update_user", server.id, remote_user_id, bandrate)
        return self.update_response

    def bulk_update_users(self, server: StormServer, remote_user_ids: List[str], bandrate: int) -> RemoteResponse:
        self._record("bulk_update_users", server.id, list(remote_user_ids), bandrate)
        if self.on_bulk_update is not None:
            self.on_bulk_update()
        return self.bulk_update_responses.get(server.id, self.bulk_update_response)

    def move_to_storm(self, server: StormServer, remote_user_id: str, job: Dict[str, Any]) -> RemoteResponse:
        self._record("move_to_storm", server.id, remote_user_id, dict(job))
        return self.move_to_storm_response


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storm.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def remote():
    return FakeProvisioningClient()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def primary_store(tmp_path):
    return PrimaryStore(str(tmp_path / "primary"))


@pytest.fixture
def staging_root(tmp_path):
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture
def enterprise(db):
    enterprise = Enterprise(name="acme", storm_enabled=True, max_storm_accounts=5, default_bandrate=50)
    db.add(enterprise)
    db.commit()
    return enterprise


@pytest.fixture
def owner(db, enterprise):
    account = Account(enterprise_id=enterprise.id, name="owner", role=AccountRole.OWNER)
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def target_account(db, enterprise):
    account = Account(enterprise_id=enterprise.id, name="member", role=AccountRole.ADMIN)
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def storm_server(db, staging_root):
    server = StormServer(name="storm-1", endpoint="http://storm-1.test:9300", staging_root=str(staging_root))
    db.add(server)
    db.commit()
    return server


def add_account(db, enterprise, name, role=AccountRole.GENERAL) -> Account:
    account = Account(enterprise_id=enterprise.id, name=name, role=role)
    db.add(account)
    db.commit()
    return account


def add_storm_account(db, account, server, bandrate=10, remote_user_id=None) -> StormAccount:
    """Insert a registered storm account directly, keeping the counter in step."""
    storm_account = StormAccount(
        account_id=account.id,
        enterprise_id=account.enterprise_id,
        storm_server_id=server.id,
        name=f"storm-{account.id}",
        remote_user_id=remote_user_id or f"remote-{account.id}",
        bandrate=bandrate,
    )
    db.add(storm_account)
    enterprise = db.get(Enterprise, account.enterprise_id)
    enterprise.registered_storm_accounts = (enterprise.registered_storm_accounts or 0) + 1
    db.commit()
    return storm_account


@pytest.fixture
def client(session_factory, remote, primary_store, locks):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provisioning_client] = lambda: remote
    app.dependency_overrides[get_primary_store] = lambda: primary_store
    app.dependency_overrides[get_locks] = lambda: locks
    app.dependency_overrides[get_callback_token] = lambda: ""
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def as_account(account: Account) -> Dict[str, str]:
    return {"X-Account-Id": str(account.id)}
