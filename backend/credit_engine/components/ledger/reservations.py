"""Two-phase credit holds around a metered external call.

``reserve`` debits the pools and commits before the call runs, so no lock or
session is held while waiting on the downstream service. ``commit`` and
``rollback`` are separate short transactions. A reservation nobody resolves
is expired by the reconciliation sweep.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...models.credit_account import CreditAccount
from ...models.enums import ReservationStatus
from ...models.reservation import Reservation
from ...platform.config import settings
from ...schemas.credits import ReservationRead
from ...shared.utils import ensure_utc, utcnow
from .errors import ReservationAlreadyResolved, ReservationNotFound
from .prioritizer import PoolBreakdown, allocate
from .store import LedgerStore

logger = logging.getLogger(__name__)


class ReservationManager:
    def __init__(self, store: LedgerStore | None = None, *, ttl_seconds: int | None = None):
        self.store = store or LedgerStore()
        self.ttl_seconds = settings.RESERVATION_TTL_SECONDS if ttl_seconds is None else int(ttl_seconds)

    def _session(self) -> Session:
        return self.store.session_factory()

    def _account_id_for(self, reservation_id: str) -> int:
        db = self._session()
        try:
            account_id = db.execute(
                select(Reservation.account_id).where(Reservation.reservation_id == reservation_id)
            ).scalar_one_or_none()
        finally:
            db.close()
        if account_id is None:
            raise ReservationNotFound(reservation_id)
        return int(account_id)

    @staticmethod
    def _load(db: Session, reservation_id: str) -> Reservation:
        reservation = db.execute(
            select(Reservation).where(Reservation.reservation_id == reservation_id).with_for_update()
        ).scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    def reserve(
        self,
        account_id: int,
        amount: int,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReservationRead:
        """Hold ``amount`` credits for one metered call.

        Raises ``InsufficientCredits`` without writing anything when the
        pools cannot cover it.
        """
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        reservation_id = str(uuid.uuid4())

        def _op(db: Session, account: CreditAccount) -> ReservationRead:
            breakdown = allocate(amount, account)
            self.store.apply_debit(
                db,
                account,
                amount,
                breakdown,
                related_reservation_id=reservation_id,
                description=description,
            )
            now = utcnow()
            reservation = Reservation(
                reservation_id=reservation_id,
                account_id=account_id,
                amount_reserved=amount,
                from_monthly=breakdown.from_monthly,
                from_rollover=breakdown.from_rollover,
                from_purchased=breakdown.from_purchased,
                status=ReservationStatus.PENDING,
                description=description,
                reservation_metadata=metadata or {},
                created_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            db.add(reservation)
            db.flush()
            return ReservationRead.model_validate(reservation)

        result = self.store.execute(account_id, _op, operation="reserve")
        logger.info(
            "Reserved %d credits reservation=%s monthly=%d rollover=%d purchased=%d",
            amount,
            reservation_id,
            result.from_monthly,
            result.from_rollover,
            result.from_purchased,
            extra={"account_id": account_id},
        )
        return result

    def _already_resolved(self, account_id: int, action: str, exc: ReservationAlreadyResolved) -> ReservationRead:
        logger.info(
            "Ignored %s of reservation=%s, already %s",
            action,
            exc.reservation_id,
            exc.status,
            extra={"account_id": account_id},
        )
        return self.get(exc.reservation_id)

    def commit(self, reservation_id: str) -> ReservationRead:
        """Finalize the debit taken at reserve time.

        Committing a reservation that is no longer pending changes nothing and
        returns its current state.
        """
        account_id = self._account_id_for(reservation_id)

        def _op(db: Session, account: CreditAccount) -> ReservationRead:
            reservation = self._load(db, reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                raise ReservationAlreadyResolved(reservation_id, reservation.status.value)
            reservation.status = ReservationStatus.COMMITTED
            reservation.resolved_at = utcnow()
            db.flush()
            return ReservationRead.model_validate(reservation)

        try:
            result = self.store.execute(account_id, _op, operation="commit")
        except ReservationAlreadyResolved as exc:
            return self._already_resolved(account_id, "commit", exc)
        logger.info("Committed reservation=%s", reservation_id, extra={"account_id": account_id})
        return result

    def _restore(self, reservation_id: str, target: ReservationStatus) -> ReservationRead:
        account_id = self._account_id_for(reservation_id)

        def _op(db: Session, account: CreditAccount) -> ReservationRead:
            reservation = self._load(db, reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                raise ReservationAlreadyResolved(reservation_id, reservation.status.value)
            self.store.apply_restore(
                db,
                account,
                PoolBreakdown.from_reservation(reservation),
                related_reservation_id=reservation_id,
                resolution=target.value,
                description=reservation.description,
            )
            reservation.status = target
            reservation.resolved_at = utcnow()
            db.flush()
            return ReservationRead.model_validate(reservation)

        try:
            result = self.store.execute(account_id, _op, operation=target.value)
        except ReservationAlreadyResolved as exc:
            return self._already_resolved(account_id, target.value, exc)
        logger.info(
            "Restored reservation=%s status=%s amount=%d",
            reservation_id,
            target.value,
            result.amount_reserved,
            extra={"account_id": account_id},
        )
        return result

    def rollback(self, reservation_id: str) -> ReservationRead:
        """Return the reserved credits to the pools they came from.

        A reservation already committed, rolled back or expired is left alone.
        """
        return self._restore(reservation_id, ReservationStatus.ROLLEDBACK)

    def expire(self, reservation_id: str) -> ReservationRead:
        return self._restore(reservation_id, ReservationStatus.EXPIRED)

    def get(self, reservation_id: str) -> ReservationRead:
        db = self._session()
        try:
            reservation = db.execute(
                select(Reservation).where(Reservation.reservation_id == reservation_id)
            ).scalar_one_or_none()
            if reservation is None:
                raise ReservationNotFound(reservation_id)
            return ReservationRead.model_validate(reservation)
        finally:
            db.close()

    def list_pending(self, account_id: int | None = None) -> list[ReservationRead]:
        db = self._session()
        try:
            query = select(Reservation).where(Reservation.status == ReservationStatus.PENDING)
            if account_id is not None:
                query = query.where(Reservation.account_id == account_id)
            rows = db.execute(query.order_by(Reservation.created_at)).scalars().all()
            return [ReservationRead.model_validate(row) for row in rows]
        finally:
            db.close()

    def list_expired_ids(self, now=None) -> list[str]:
        now = ensure_utc(now) or utcnow()
        db = self._session()
        try:
            return list(
                db.execute(
                    select(Reservation.reservation_id)
                    .where(
                        Reservation.status == ReservationStatus.PENDING,
                        Reservation.expires_at <= now,
                    )
                    .order_by(Reservation.expires_at)
                ).scalars()
            )
        finally:
            db.close()

    @contextmanager
    def metered(
        self,
        account_id: int,
        amount: int,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[ReservationRead]:
        """Reserve, run the body, then commit; roll back if the body raises.

        The original exception is re-raised after the rollback.
        """
        reservation = self.reserve(account_id, amount, description=description, metadata=metadata)
        try:
            yield reservation
        except BaseException:
            self.rollback(reservation.reservation_id)
            raise
        result = self.commit(reservation.reservation_id)
        if result.status != ReservationStatus.COMMITTED:
            # Expired by the sweep while the call ran; credits were already restored.
            logger.warning(
                "Reservation %s finished after it was %s",
                reservation.reservation_id,
                result.status.value,
                extra={"account_id": account_id},
            )


def run_metered(
    manager: ReservationManager,
    account_id: int,
    amount: int,
    call: Callable[[], Any],
    *,
    description: str | None = None,
) -> Any:
    """Convenience wrapper: ``call()`` billed ``amount`` credits, refunded on failure."""
    with manager.metered(account_id, amount, description=description):
        return call()
