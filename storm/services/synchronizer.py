"""
Synchronization Coordinator

Sequences remote and local writes for the storm account lifecycle:
create, destroy, update and bulk update.

Ordering:
1. Admission (quota pre-check included, so no remote account is provisioned
   for a request that would exceed the quota)
2. Remote call, never under the enterprise lock
3. Local commit, only after the remote acknowledged; the quota is
   re-validated atomically by the counter update

A remote failure never leaves a local row behind. A crash between a
successful remote call and the local commit leaves an unregistered remote
account; that gap is not hidden here.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storm.errors import (
    AlreadyExists,
    BulkUpdateStormUsersError,
    CreateStormUserError,
    DestroyStormUserError,
    StormAccountCountReached,
    UpdateStormUserError,
)
from storm.models import Account, EventType, StormAccount, StormServer, StormSettings
from storm.services.admission import AdmissionController, StormAction
from storm.services.locks import KeyedLocks, account_key, enterprise_key
from storm.services.provisioning_client import (
    STATUS_NO_CONTENT,
    STATUS_OK,
    ProvisioningClient,
    ProvisioningError,
    RemoteResponse,
)
from storm.services.registry import StormRegistry, storm_account_name
from storm.services.transfer_jobs import TransferJobStore

logger = logging.getLogger(__name__)


class StormUserSynchronizer:
    """
    Keeps the storm registry and the remote provisioning service in step.
    """

    def __init__(self, db: Session, client: ProvisioningClient, locks: KeyedLocks):
        """
        Initialize synchronizer.

        Args:
            db: SQLAlchemy session (one per request)
            client: Remote provisioning client
            locks: Shared keyed locks
        """
        self.db = db
        self.client = client
        self.locks = locks
        self.registry = StormRegistry(db)
        self.admission = AdmissionController(db)

    def _call_remote(self, call: Callable[[], RemoteResponse], error_cls, context: str) -> RemoteResponse:
        try:
            return call()
        except ProvisioningError as e:
            logger.error(f"{context}: {e}")
            raise error_cls(f"{context}: {e}")

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ========================================================================
    # CREATE
    # ========================================================================

    def _remote_user_id(self, response: RemoteResponse) -> str:
        if response.status_code is not None and not 200 <= int(response.status_code) < 300:
            raise CreateStormUserError(f"Storm server answered {response.status_code}")
        try:
            body = response.json()
        except ProvisioningError as e:
            raise CreateStormUserError(str(e))
        user_id = body.get("user_id")
        if user_id is None or str(user_id).strip() == "":
            raise CreateStormUserError("Storm server response carries no user_id")
        return str(user_id)

    def _compensate_create(self, server: StormServer, remote_user_id: str, account: Account) -> None:
        try:
            response = self.client.destroy_user(server, remote_user_id)
        except ProvisioningError as e:
            logger.error(f"Compensating destroy of remote user {remote_user_id} failed: {e}")
            return
        if not response.is_status(STATUS_NO_CONTENT):
            logger.error(
                f"Compensating destroy of remote user {remote_user_id} on {server.name} "
                f"answered {response.status_code}; remote account is orphaned"
            )
            return
        logger.warning(f"Rolled back remote user {remote_user_id} for account {account.id}")

    def create(
        self,
        requester: Account,
        account_id: int,
        bandrate: Any = None,
        storm_server_id: Optional[int] = None,
    ) -> StormAccount:
        """
        Provision a storm account for the target account.

        Returns:
            The persisted StormAccount

        Raises:
            AdmissionError subclasses, CreateStormUserError
        """
        with self.locks.lock(account_key(account_id)):
            admission = self.admission.admit(requester, StormAction.CREATE, account_id, bandrate)
            account = admission.target_account
            enterprise_id = admission.enterprise.id
            server = self.registry.select_server(storm_server_id)
            name = storm_account_name(account.id)

            params = {
                "name": name,
                "bandrate": admission.bandrate,
                "enterprise_id": enterprise_id,
                "account_id": account.id,
            }
            response = self._call_remote(
                lambda: self.client.create_user(server, params),
                CreateStormUserError,
                f"create_user on {server.name}",
            )
            remote_user_id = self._remote_user_id(response)

            with self.locks.lock(enterprise_key(enterprise_id)):
                try:
                    storm_account = self.registry.add(account, server, remote_user_id, admission.bandrate, name=name)
                    self.registry.log_event(
                        EventType.STORM_USER_CREATE,
                        f"Created storm user '{name}' on {server.name} (bandrate={admission.bandrate})",
                        enterprise_id=enterprise_id,
                        account_id=account.id,
                    )
                    self.db.commit()
                except (StormAccountCountReached, IntegrityError) as e:
                    self.db.rollback()
                    self._compensate_create(server, remote_user_id, account)
                    if isinstance(e, IntegrityError):
                        raise AlreadyExists()
                    raise
                except Exception:
                    self.db.rollback()
                    raise

            self.db.refresh(storm_account)
            logger.info(f"Storm user {name} created for account {account.id} on {server.name}")
            return storm_account

    # ========================================================================
    # DESTROY
    # ========================================================================

    def destroy(self, requester: Account, account_id: int) -> int:
        """
        Remove the storm account remotely, then locally.

        Returns:
            The remote status code (204)
        """
        with self.locks.lock(account_key(account_id)):
            admission = self.admission.admit(requester, StormAction.DESTROY, account_id)
            storm_account = admission.storm_account
            server = storm_account.storm_server

            response = self._call_remote(
                lambda: self.client.destroy_user(server, storm_account.remote_user_id),
                DestroyStormUserError,
                f"destroy_user on {server.name}",
            )
            if not response.is_status(STATUS_NO_CONTENT):
                logger.error(f"destroy_user {storm_account.name} answered {response.status_code}")
                raise DestroyStormUserError(f"Storm server answered {response.status_code}")

            with self.locks.lock(enterprise_key(admission.enterprise.id)):
                name = storm_account.name
                self.registry.remove(storm_account)
                self.registry.log_event(
                    EventType.STORM_USER_DESTROY,
                    f"Destroyed storm user '{name}' on {server.name}",
                    enterprise_id=admission.enterprise.id,
                    account_id=account_id,
                )
                self._commit()

            # Callbacks for this user can no longer complete
            discarded = TransferJobStore(server.staging_root).discard_for_user(name)
            if discarded:
                logger.info(f"Discarded {discarded} pending transfer jobs of {name}")

            logger.info(f"Storm user {name} destroyed for account {account_id}")
            return int(response.status_code)

    # ========================================================================
    # UPDATE
    # ========================================================================

    def update(self, requester: Account, account_id: int, bandrate: Any) -> StormAccount:
        """Change one storm account's bandrate."""
        with self.locks.lock(account_key(account_id)):
            admission = self.admission.admit(requester, StormAction.UPDATE, account_id, bandrate)
            storm_account = admission.storm_account
            server = storm_account.storm_server

            response = self._call_remote(
                lambda: self.client.update_user(server, storm_account.remote_user_id, admission.bandrate),
                UpdateStormUserError,
                f"update_user on {server.name}",
            )
            if not response.is_status(STATUS_NO_CONTENT):
                logger.error(f"update_user {storm_account.name} answered {response.status_code}")
                raise UpdateStormUserError(f"Storm server answered {response.status_code}")

            previous = storm_account.bandrate
            self.registry.set_bandrate(storm_account, admission.bandrate)
            self.registry.log_event(
                EventType.STORM_USER_UPDATE,
                f"Storm user '{storm_account.name}' bandrate {previous} -> {admission.bandrate}",
                enterprise_id=admission.enterprise.id,
                account_id=account_id,
            )
            self._commit()
            self.db.refresh(storm_account)
            return storm_account

    # ========================================================================
    # BULK UPDATE
    # ========================================================================

    def _group_by_server(self, storm_accounts: List[StormAccount]) -> Dict[int, List[StormAccount]]:
        groups: Dict[int, List[StormAccount]] = {}
        for storm_account in storm_accounts:
            groups.setdefault(storm_account.storm_server_id, []).append(storm_account)
        return groups

    def _record_divergence(self, enterprise_id: int, applied: List[str], bandrate: int) -> None:
        servers = ", ".join(applied)
        logger.error(
            f"Enterprise {enterprise_id}: {servers} applied bandrate {bandrate} before a later server refused; "
            f"local storm users keep their previous bandrate"
        )
        self.registry.log_event(
            EventType.STORM_USERS_BULK_DIVERGED,
            f"Bandrate {bandrate} applied on {servers} only; local storm users not updated",
            enterprise_id=enterprise_id,
        )
        self._commit()

    def bulk_update(self, requester: Account, enterprise_id: int, bandrate: Any) -> StormSettings:
        """
        Set every storm account of the enterprise, and its default, to bandrate.

        The account locks of all the enterprise's storm accounts are held from
        the remote calls through the local commit. The remote is asked once per
        server holding those accounts, and nothing is written locally unless
        every server answered 200. Only the accounts sent to the remote are
        rewritten.
        """
        admission = self.admission.admit_enterprise(requester, enterprise_id, bandrate)
        enterprise = admission.enterprise
        locked = {sa.account_id for sa in self.registry.list_for_enterprise(enterprise.id)}

        with self.locks.lock_all(account_key(account_id) for account_id in locked):
            # Rows may have been destroyed or created before the locks were ours
            self.db.expire_all()
            storm_accounts = [
                sa for sa in self.registry.list_for_enterprise(enterprise.id) if sa.account_id in locked
            ]

            applied: List[str] = []
            for server_accounts in self._group_by_server(storm_accounts).values():
                server = server_accounts[0].storm_server
                remote_ids = [sa.remote_user_id for sa in server_accounts]
                try:
                    response = self._call_remote(
                        lambda: self.client.bulk_update_users(server, remote_ids, admission.bandrate),
                        BulkUpdateStormUsersError,
                        f"bulk_update_users on {server.name}",
                    )
                    if not response.is_status(STATUS_OK):
                        logger.error(f"bulk_update_users on {server.name} answered {response.status_code}")
                        raise BulkUpdateStormUsersError(f"Storm server answered {response.status_code}")
                except BulkUpdateStormUsersError:
                    if applied:
                        self._record_divergence(enterprise.id, applied, admission.bandrate)
                    raise
                applied.append(server.name)

            with self.locks.lock(enterprise_key(enterprise.id)):
                updated = self.registry.set_bandrate_bulk(
                    enterprise, admission.bandrate, [sa.id for sa in storm_accounts]
                )
                self.registry.log_event(
                    EventType.STORM_USERS_BULK_UPDATE,
                    f"Set bandrate {admission.bandrate} on {updated} storm users and as enterprise default",
                    enterprise_id=enterprise.id,
                )
                self._commit()

        self.db.refresh(enterprise)
        logger.info(f"Enterprise {enterprise.id} storm bandrate set to {admission.bandrate}")
        return enterprise.storm_settings
