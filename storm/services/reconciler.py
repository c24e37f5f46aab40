"""
Registry Reconciler

Background sweep that keeps Enterprise.registered_storm_accounts equal to
the number of storm account rows. Each pass is idempotent: an enterprise
whose counter already matches is left untouched.

Runs in a background thread, every STORM_RECONCILE_INTERVAL_SECONDS.
"""

import logging
import threading
from typing import List

from sqlalchemy import select

from storm.models import Enterprise, EventType
from storm.services.locks import KeyedLocks, enterprise_key, get_keyed_locks
from storm.services.registry import StormRegistry

logger = logging.getLogger(__name__)


class RegistryReconciler:
    """
    Repair registered-count drift left by crashes or manual edits.
    """

    def __init__(self, session_factory, interval_seconds: int = 300, locks: KeyedLocks = None):
        """
        Initialize reconciler.

        Args:
            session_factory: SQLAlchemy session factory
            interval_seconds: Pause between passes
            locks: Keyed locks shared with the coordinators
        """
        self.session_factory = session_factory
        self.interval = interval_seconds
        self.locks = locks or get_keyed_locks()

        self.running = False
        self._stop = threading.Event()
        self.thread: threading.Thread = None

        logger.info(f"Registry reconciler initialized: interval={interval_seconds}s")

    def start(self):
        """Start reconciler in background thread"""
        if self.running:
            logger.warning("Registry reconciler already running")
            return

        self.running = True
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, name="storm-reconciler", daemon=True)
        self.thread.start()

        logger.info("Registry reconciler started")

    def stop(self):
        """Stop reconciler"""
        if not self.running:
            return

        self.running = False
        self._stop.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        logger.info("Registry reconciler stopped")

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.reconcile_once()
            except Exception as e:
                logger.error(f"Registry reconciliation error: {e}", exc_info=True)

    def reconcile_once(self) -> List[int]:
        """
        Run one pass over all enterprises.

        Returns:
            Ids of the enterprises whose counter was repaired
        """
        repaired: List[int] = []
        db = self.session_factory()
        try:
            enterprise_ids = db.scalars(select(Enterprise.id).order_by(Enterprise.id)).all()
            for enterprise_id in enterprise_ids:
                with self.locks.lock(enterprise_key(enterprise_id)):
                    db.expire_all()
                    registry = StormRegistry(db)
                    before, actual = registry.recount(enterprise_id)
                    if before == actual:
                        continue
                    registry.log_event(
                        EventType.REGISTRY_RECONCILED,
                        f"registered_storm_accounts {before} -> {actual}",
                        enterprise_id=enterprise_id,
                    )
                    try:
                        db.commit()
                    except Exception:
                        db.rollback()
                        raise
                    logger.warning(
                        f"Enterprise {enterprise_id}: registered_storm_accounts drifted ({before}), reset to {actual}"
                    )
                    repaired.append(enterprise_id)
        finally:
            db.close()
        return repaired
