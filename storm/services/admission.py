"""
Admission Controller

Pure validation run before every mutating storm operation. Checks, in order:
target account exists, requester is an owner of the same enterprise, storm
is enabled, quota and uniqueness (create only), bandrate type. Raises the
first failing check as a typed AdmissionError; never writes.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from storm.errors import (
    AccountNotFound,
    AlreadyExists,
    InvalidBandrate,
    StormAccountCountReached,
    StormUserNotFound,
    UnpermittedAccount,
    UnpermittedEnterprise,
)
from storm.models import Account, AccountRole, Enterprise, StormAccount
from storm.services.registry import StormRegistry

logger = logging.getLogger(__name__)


class StormAction(str, enum.Enum):
    CREATE = "create"
    DESTROY = "destroy"
    UPDATE = "update"
    BULK_UPDATE = "bulk_update"


_REQUIRES_BANDRATE = {StormAction.UPDATE, StormAction.BULK_UPDATE}
_REQUIRES_STORM_ACCOUNT = {StormAction.DESTROY, StormAction.UPDATE}


@dataclass
class Admission:
    """Resolved state for an admitted request"""
    action: StormAction
    enterprise: Enterprise
    target_account: Optional[Account] = None
    storm_account: Optional[StormAccount] = None
    bandrate: Optional[int] = None


def has_owner_capability(account: Account) -> bool:
    role = account.role
    if not isinstance(role, AccountRole):
        try:
            role = AccountRole(role)
        except ValueError:
            return False
    return role.is_owner


def is_valid_bandrate(value: Any) -> bool:
    # bool is an int subclass; "100" and 100.0 are rejected as well
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class AdmissionController:
    def __init__(self, db: Session):
        self.db = db
        self.registry = StormRegistry(db)

    def _check_requester(self, requester: Account, enterprise_id: int) -> None:
        if not has_owner_capability(requester):
            raise UnpermittedAccount()
        if requester.enterprise_id != enterprise_id:
            raise UnpermittedAccount()

    def _check_enterprise(self, enterprise: Enterprise) -> None:
        if not enterprise.storm_settings.enabled:
            raise UnpermittedEnterprise()

    def _check_bandrate(self, action: StormAction, bandrate: Any) -> None:
        if bandrate is None:
            if action in _REQUIRES_BANDRATE:
                raise InvalidBandrate("bandrate is required")
            return
        if not is_valid_bandrate(bandrate):
            raise InvalidBandrate()

    def admit(
        self,
        requester: Account,
        action: StormAction,
        target_account_id: int,
        bandrate: Any = None,
    ) -> Admission:
        """Validate an account-level request (create, destroy, update)."""
        target = self.registry.get_account(target_account_id)
        if target is None:
            raise AccountNotFound(f"Account {target_account_id} not found")

        self._check_requester(requester, target.enterprise_id)

        enterprise = target.enterprise
        self._check_enterprise(enterprise)

        storm_account = self.registry.get_by_account(target.id)
        if action == StormAction.CREATE:
            if int(enterprise.registered_storm_accounts or 0) >= int(enterprise.max_storm_accounts or 0):
                raise StormAccountCountReached()
            if storm_account is not None:
                raise AlreadyExists()
        elif action in _REQUIRES_STORM_ACCOUNT and storm_account is None:
            raise StormUserNotFound(f"Account {target.id} has no storm account")

        self._check_bandrate(action, bandrate)

        if bandrate is None and action == StormAction.CREATE:
            bandrate = enterprise.storm_settings.default_bandrate

        logger.debug(f"Admitted {action.value} for account {target.id} by {requester.id}")
        return Admission(
            action=action,
            enterprise=enterprise,
            target_account=target,
            storm_account=storm_account,
            bandrate=bandrate,
        )

    def admit_enterprise(self, requester: Account, enterprise_id: int, bandrate: Any) -> Admission:
        """Validate an enterprise-level request (bulk update)."""
        self._check_requester(requester, enterprise_id)

        enterprise = self.registry.get_enterprise(enterprise_id)
        if enterprise is None:
            raise UnpermittedAccount()
        self._check_enterprise(enterprise)
        self._check_bandrate(StormAction.BULK_UPDATE, bandrate)

        return Admission(action=StormAction.BULK_UPDATE, enterprise=enterprise, bandrate=bandrate)
