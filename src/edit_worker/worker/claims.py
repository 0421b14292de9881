"""Atomic claim, renewal, and release of project+user units."""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from edit_worker.worker.errors import ClaimLost
from edit_worker.worker.models import ClaimOutcome, ClaimResult, ClaimStatus, WorkUnit
from edit_worker.worker.repository import WorkerRepository

logger = logging.getLogger(__name__)


class ClaimCoordinator:
    """Owns claim records for one worker identity."""

    def __init__(
        self,
        *,
        repository: WorkerRepository,
        worker_id: str,
        renew_interval_seconds: float = 30.0,
    ) -> None:
        self.repository = repository
        self.worker_id = worker_id
        self.renew_interval_seconds = renew_interval_seconds

    def try_claim(self, unit: WorkUnit) -> ClaimResult:
        """Claim ``unit`` if it is free, released, or already ours.

        The create-if-absent insert and the update-if-owner fallback are each
        a single conditional write, so two workers racing for the same unit
        can never both observe success.
        """

        try:
            if self.repository.insert_claim(unit=unit, worker_id=self.worker_id):
                logger.info("Claimed %s as %s", unit, self.worker_id)
                return ClaimResult(outcome=ClaimOutcome.CLAIMED, unit=unit, owner=self.worker_id)
            if self.repository.take_over_claim(unit=unit, worker_id=self.worker_id):
                logger.info("Re-claimed %s as %s", unit, self.worker_id)
                return ClaimResult(outcome=ClaimOutcome.CLAIMED, unit=unit, owner=self.worker_id)
            record = self.repository.get_claim(unit)
        except SQLAlchemyError as error:
            logger.warning("Claim attempt for %s failed: %s", unit, error)
            return ClaimResult(outcome=ClaimOutcome.ERROR, unit=unit, error=str(error))

        owner = record.worker_id if record is not None else None
        logger.info("Unit %s already owned by %s", unit, owner)
        return ClaimResult(outcome=ClaimOutcome.ALREADY_OWNED, unit=unit, owner=owner)

    def renew(self, unit: WorkUnit, *, status: ClaimStatus = ClaimStatus.ACTIVE) -> bool:
        """Refresh the claim; False means it was lost."""

        try:
            renewed = self.repository.renew_claim(
                unit=unit,
                worker_id=self.worker_id,
                status=status,
            )
        except SQLAlchemyError as error:
            logger.warning("Claim renewal for %s failed: %s", unit, error)
            return False
        if not renewed:
            logger.warning("Claim renewal rejected for %s; claim lost", unit)
        return renewed

    def release(self, unit: WorkUnit) -> bool:
        """Best-effort release; never raises."""

        try:
            released = self.repository.release_claim(unit=unit, worker_id=self.worker_id)
        except SQLAlchemyError as error:
            logger.warning("Claim release for %s failed: %s", unit, error)
            return False
        if released:
            logger.info("Released claim %s", unit)
        return released

    def lease(self, unit: WorkUnit) -> ClaimLease:
        return ClaimLease(coordinator=self, unit=unit)


class ClaimLease:
    """Renewal schedule for one held claim, driven by the unit loop."""

    def __init__(self, *, coordinator: ClaimCoordinator, unit: WorkUnit) -> None:
        self.coordinator = coordinator
        self.unit = unit
        self.lost = False
        self._last_renewed = time.monotonic()

    def heartbeat(self, *, status: ClaimStatus, force: bool = False) -> None:
        """Renew when due (or when forced); raise ``ClaimLost`` on failure."""

        if self.lost:
            raise ClaimLost(self.unit.key, reason="claim already lost")
        now = time.monotonic()
        if not force and now - self._last_renewed < self.coordinator.renew_interval_seconds:
            return
        if not self.coordinator.renew(self.unit, status=status):
            self.lost = True
            raise ClaimLost(self.unit.key)
        self._last_renewed = now

    def release(self) -> bool:
        if self.lost:
            return False
        return self.coordinator.release(self.unit)
