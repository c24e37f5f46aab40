"""
Storm Registry

Local system of record for storm accounts: which account maps to which
remote identity, on which server, at which bandrate. Also maintains the
denormalized Enterprise.registered_storm_accounts counter.

The registry flushes but never commits; coordinators own the transaction
boundaries so a row write and its counter change land together.
"""

from typing import List, Optional, Tuple

from sqlalchemy import func, select, update as sql_update
from sqlalchemy.orm import Session

from storm.errors import StormAccountCountReached, StormServerNotFound
from storm.models import Account, Enterprise, EventType, StormAccount, StormEvent, StormServer


def storm_account_name(account_id: int) -> str:
    return f"storm-{int(account_id)}"


class StormRegistry:
    def __init__(self, db: Session):
        self.db = db

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    def get_enterprise(self, enterprise_id: int) -> Optional[Enterprise]:
        return self.db.get(Enterprise, enterprise_id)

    def get_account(self, account_id: int) -> Optional[Account]:
        return self.db.get(Account, account_id)

    def get_by_account(self, account_id: int) -> Optional[StormAccount]:
        return self.db.scalars(select(StormAccount).where(StormAccount.account_id == account_id)).first()

    def get_by_name(self, name: str) -> Optional[StormAccount]:
        return self.db.scalars(select(StormAccount).where(StormAccount.name == name)).first()

    def list_for_enterprise(self, enterprise_id: int) -> List[StormAccount]:
        return self.db.scalars(
            select(StormAccount).where(StormAccount.enterprise_id == enterprise_id).order_by(StormAccount.id)
        ).all()

    def count_for_enterprise(self, enterprise_id: int) -> int:
        return int(self.db.scalar(
            select(func.count(StormAccount.id)).where(StormAccount.enterprise_id == enterprise_id)
        ) or 0)

    def select_server(self, storm_server_id: Optional[int] = None) -> StormServer:
        """Return the requested server, or the one holding the fewest storm accounts."""
        if storm_server_id is not None:
            server = self.db.get(StormServer, storm_server_id)
            if server is None:
                raise StormServerNotFound(f"Storm server {storm_server_id} not found")
            return server

        load = (
            select(StormServer, func.count(StormAccount.id).label("load"))
            .outerjoin(StormAccount, StormAccount.storm_server_id == StormServer.id)
            .group_by(StormServer.id)
            .order_by("load", StormServer.id)
        )
        row = self.db.execute(load).first()
        if row is None:
            raise StormServerNotFound()
        return row[0]

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def _increment_registered(self, enterprise_id: int) -> None:
        # Guarded by the same check as admission so two racing commits cannot
        # both push the counter past the quota.
        result = self.db.execute(
            sql_update(Enterprise)
            .where(
                Enterprise.id == enterprise_id,
                Enterprise.registered_storm_accounts < Enterprise.max_storm_accounts,
            )
            .values(registered_storm_accounts=Enterprise.registered_storm_accounts + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StormAccountCountReached()

    def _decrement_registered(self, enterprise_id: int) -> None:
        self.db.execute(
            sql_update(Enterprise)
            .where(Enterprise.id == enterprise_id, Enterprise.registered_storm_accounts > 0)
            .values(registered_storm_accounts=Enterprise.registered_storm_accounts - 1)
            .execution_options(synchronize_session=False)
        )

    def add(
        self,
        account: Account,
        server: StormServer,
        remote_user_id: str,
        bandrate: int,
        name: Optional[str] = None,
    ) -> StormAccount:
        """Insert a storm account and count it against the enterprise quota."""
        self._increment_registered(account.enterprise_id)
        storm_account = StormAccount(
            account_id=account.id,
            enterprise_id=account.enterprise_id,
            storm_server_id=server.id,
            name=name or storm_account_name(account.id),
            remote_user_id=str(remote_user_id),
            bandrate=bandrate,
        )
        self.db.add(storm_account)
        self.db.flush()
        return storm_account

    def remove(self, storm_account: StormAccount) -> None:
        enterprise_id = storm_account.enterprise_id
        self.db.delete(storm_account)
        self.db.flush()
        self._decrement_registered(enterprise_id)

    def set_bandrate(self, storm_account: StormAccount, bandrate: int) -> StormAccount:
        storm_account.bandrate = bandrate
        self.db.flush()
        return storm_account

    def set_bandrate_bulk(
        self,
        enterprise: Enterprise,
        bandrate: int,
        storm_account_ids: Optional[List[int]] = None,
    ) -> int:
        """Set bandrate on the enterprise's storm accounts (or only the given ones) and as its default."""
        query = sql_update(StormAccount).where(StormAccount.enterprise_id == enterprise.id)
        if storm_account_ids is not None:
            query = query.where(StormAccount.id.in_(list(storm_account_ids)))
        result = self.db.execute(
            query.values(bandrate=bandrate).execution_options(synchronize_session=False)
        )
        enterprise.default_bandrate = bandrate
        self.db.flush()
        return int(result.rowcount or 0)

    def recount(self, enterprise_id: int) -> Tuple[int, int]:
        """Reset the registered counter from the rows. Returns (before, after)."""
        enterprise = self.db.get(Enterprise, enterprise_id)
        actual = self.count_for_enterprise(enterprise_id)
        before = int(enterprise.registered_storm_accounts or 0)
        if before != actual:
            enterprise.registered_storm_accounts = actual
            self.db.flush()
        return before, actual

    def log_event(
        self,
        event_type: EventType,
        message: str,
        enterprise_id: Optional[int] = None,
        account_id: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> StormEvent:
        event = StormEvent(
            event_type=event_type,
            message=message,
            enterprise_id=enterprise_id,
            account_id=account_id,
            job_id=job_id,
        )
        self.db.add(event)
        return event
