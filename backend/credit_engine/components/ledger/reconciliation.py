"""Periodic sweep: monthly resets, stuck reservations and rollover expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from ...models.credit_account import CreditAccount
from ...models.enums import CreditPool, LedgerKind, ReservationStatus
from ...shared.utils import add_one_month, ensure_utc, to_epoch, utcnow
from .reservations import ReservationManager
from .store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    started_at: datetime
    accounts_reset: int = 0
    reservations_expired: int = 0
    rollovers_expired: int = 0
    credits_rolled_over: int = 0
    credits_expired: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "accounts_reset": self.accounts_reset,
            "reservations_expired": self.reservations_expired,
            "rollovers_expired": self.rollovers_expired,
            "credits_rolled_over": self.credits_rolled_over,
            "credits_expired": self.credits_expired,
            "failures": list(self.failures),
        }


class ReconciliationJob:
    def __init__(self, store: LedgerStore | None = None, reservations: ReservationManager | None = None):
        self.store = store or LedgerStore()
        self.reservations = reservations or ReservationManager(self.store)

    def _account_ids(self, *criteria) -> list[int]:
        db = self.store.session_factory()
        try:
            return list(
                db.execute(
                    select(CreditAccount.account_id).where(and_(*criteria)).order_by(CreditAccount.account_id)
                ).scalars()
            )
        finally:
            db.close()

    def _record_failure(self, report: ReconciliationReport, step: str, ref: Any, exc: Exception) -> None:
        logger.exception("Reconciliation step=%s failed ref=%s", step, ref)
        report.failures.append({"step": step, "ref": str(ref), "error": str(exc)})

    # ------------------------------------------------------------------

    def reset_account(self, account_id: int, now: datetime) -> int | None:
        """Roll one account into its next monthly period. Returns credits carried, or None if not due."""

        def _op(db: Session, account: CreditAccount) -> int | None:
            reset_at = ensure_utc(account.monthly_reset_at)
            if reset_at is None or reset_at > now or int(account.monthly_allocated or 0) <= 0:
                return None
            key = f"monthly-reset:{account_id}:{to_epoch(reset_at)}"
            carried = self.store.apply_period_rollover(db, account, now=now, related_event_id=key)
            allocated = int(account.monthly_allocated or 0)
            account.monthly_used = 0
            account.monthly_reset_at = add_one_month(reset_at)
            account.lifetime_earned = int(account.lifetime_earned or 0) + allocated
            self.store.append_entry(
                db,
                account,
                delta=allocated,
                kind=LedgerKind.MONTHLY_RESET,
                pool=CreditPool.MONTHLY,
                breakdown={"monthly": allocated},
                related_event_id=key,
                description="Monthly credits reset",
                metadata={"next_reset_at": account.monthly_reset_at.isoformat()},
            )
            return carried

        return self.store.execute(account_id, _op, operation="monthly_reset")

    def expire_rollover(self, account_id: int, now: datetime) -> int:
        def _op(db: Session, account: CreditAccount) -> int:
            expires_at = ensure_utc(account.rollover_expires_at)
            amount = int(account.rollover_amount or 0)
            if expires_at is None or expires_at > now:
                return 0
            account.rollover_amount = 0
            account.rollover_expires_at = None
            if amount > 0:
                self.store.append_entry(
                    db,
                    account,
                    delta=-amount,
                    kind=LedgerKind.EXPIRE,
                    pool=CreditPool.ROLLOVER,
                    breakdown={"rollover": -amount},
                    related_event_id=f"rollover-expiry:{account_id}:{to_epoch(expires_at)}",
                    description="Rollover credits expired",
                )
            return amount

        return self.store.execute(account_id, _op, operation="expire_rollover")

    def reset_monthly(self, report: ReconciliationReport, now: datetime) -> None:
        due = self._account_ids(
            CreditAccount.monthly_reset_at.is_not(None),
            CreditAccount.monthly_reset_at <= now,
            CreditAccount.monthly_allocated > 0,
        )
        for account_id in due:
            try:
                carried = self.reset_account(account_id, now)
            except Exception as exc:
                self._record_failure(report, "monthly_reset", account_id, exc)
                continue
            if carried is None:
                continue
            report.accounts_reset += 1
            report.credits_rolled_over += carried

    def sweep_reservations(self, report: ReconciliationReport, now: datetime) -> None:
        for reservation_id in self.reservations.list_expired_ids(now):
            try:
                result = self.reservations.expire(reservation_id)
            except Exception as exc:
                self._record_failure(report, "reservation_expiry", reservation_id, exc)
                continue
            if result.status != ReservationStatus.EXPIRED:
                # Resolved by its caller between listing and expiry.
                continue
            report.reservations_expired += 1

    def expire_rollovers(self, report: ReconciliationReport, now: datetime) -> None:
        due = self._account_ids(
            CreditAccount.rollover_expires_at.is_not(None),
            CreditAccount.rollover_expires_at <= now,
        )
        for account_id in due:
            try:
                expired = self.expire_rollover(account_id, now)
            except Exception as exc:
                self._record_failure(report, "rollover_expiry", account_id, exc)
                continue
            if expired:
                report.rollovers_expired += 1
                report.credits_expired += expired

    def run(self, now: datetime | None = None) -> ReconciliationReport:
        now = ensure_utc(now) or utcnow()
        report = ReconciliationReport(started_at=now)
        self.reset_monthly(report, now)
        self.sweep_reservations(report, now)
        self.expire_rollovers(report, now)
        logger.info(
            "Reconciliation finished reset=%d reservations_expired=%d rollovers_expired=%d failures=%d",
            report.accounts_reset,
            report.reservations_expired,
            report.rollovers_expired,
            len(report.failures),
        )
        return report

    def run_reservation_sweep(self, now: datetime | None = None) -> ReconciliationReport:
        """Expire stuck reservations only; scheduled more often than the full run."""
        now = ensure_utc(now) or utcnow()
        report = ReconciliationReport(started_at=now)
        self.sweep_reservations(report, now)
        if report.reservations_expired or report.failures:
            logger.info(
                "Reservation sweep expired=%d failures=%d",
                report.reservations_expired,
                len(report.failures),
            )
        return report
