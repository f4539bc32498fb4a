"""Durable per-account credit pools with an append-only transaction log.

Every public operation runs in one short transaction scoped to one account
row. The row is locked with ``SELECT ... FOR UPDATE`` where the database
supports it, and the ``version`` column catches writers that raced past the
lock (SQLite). A lost race surfaces as ``TransactionConflict`` after a bounded
number of retries.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.credit_account import CreditAccount
from ...models.enums import CreditPool, LedgerKind
from ...models.ledger_transaction import LedgerTransaction
from ...platform.config import settings
from ...platform.database import SessionLocal
from ...schemas.credits import CreditAccountSnapshot, LedgerTransactionRead
from ...shared.utils import add_one_month, ensure_utc, to_epoch, utcnow
from .errors import InsufficientCredits, InvariantViolation, TransactionConflict
from .prioritizer import PoolBreakdown

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_ERROR_MARKERS = ("database is locked", "could not serialize", "deadlock detected")
_MAX_RETRY_DELAY_SECONDS = 1.0


def subscription_period_key(account_id: int, period_end: datetime) -> str:
    return f"subscription-period:{account_id}:{to_epoch(period_end)}"


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def check_invariant(account: CreditAccount) -> None:
    """Recompute ``balance`` from the pools and refuse impossible pool states."""
    allocated = int(account.monthly_allocated or 0)
    used = int(account.monthly_used or 0)
    rollover = int(account.rollover_amount or 0)
    purchased = int(account.purchased_amount or 0)
    if used < 0 or used > allocated:
        raise InvariantViolation(
            f"account {account.account_id}: monthly_used={used} outside [0, {allocated}]"
        )
    if rollover < 0:
        raise InvariantViolation(f"account {account.account_id}: rollover_amount={rollover}")
    if purchased < 0:
        raise InvariantViolation(f"account {account.account_id}: purchased_amount={purchased}")
    account.recompute_balance()


class LedgerStore:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else int(max_retries)
        self.retry_backoff_seconds = (
            settings.LEDGER_RETRY_BACKOFF_SECONDS
            if retry_backoff_seconds is None
            else float(retry_backoff_seconds)
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def ensure_account(self, account_id: int) -> None:
        """Create an empty account row if none exists. Safe under concurrent callers."""
        db = self.session_factory()
        try:
            exists = db.execute(
                select(CreditAccount.account_id).where(CreditAccount.account_id == account_id)
            ).first()
            if exists:
                return
            account = CreditAccount(
                account_id=account_id,
                monthly_allocated=0,
                monthly_used=0,
                rollover_amount=0,
                purchased_amount=0,
                balance=0,
                lifetime_earned=0,
                lifetime_spent=0,
            )
            db.add(account)
            db.commit()
            logger.info("Created credit account", extra={"account_id": account_id})
        except IntegrityError:
            # Another writer created it first.
            db.rollback()
        finally:
            db.close()

    def _lock_account(self, db: Session, account_id: int) -> CreditAccount:
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.account_id == account_id)
            .with_for_update()
        )
        account = db.execute(stmt).scalar_one_or_none()
        if account is None:
            self.ensure_account(account_id)
            account = db.execute(stmt).scalar_one()
        return account

    @contextmanager
    def transaction(self, account_id: int) -> Iterator[tuple[Session, CreditAccount]]:
        """Yield ``(db, account)`` with the account row locked; commit on clean exit."""
        db = self.session_factory()
        try:
            account = self._lock_account(db, account_id)
            yield db, account
            check_invariant(account)
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise TransactionConflict(f"account {account_id} changed concurrently") from exc
        except OperationalError as exc:
            db.rollback()
            if _is_lock_error(exc):
                raise TransactionConflict(f"account {account_id} is locked") from exc
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def execute(self, account_id: int, fn: Callable[[Session, CreditAccount], T], *, operation: str = "ledger") -> T:
        """Run ``fn(db, account)`` in an account transaction, retrying lost races."""
        attempt = 0
        while True:
            try:
                with self.transaction(account_id) as (db, account):
                    return fn(db, account)
            except TransactionConflict:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "Giving up after %d conflicts operation=%s",
                        attempt,
                        operation,
                        extra={"account_id": account_id},
                    )
                    raise
                delay = min(self.retry_backoff_seconds * (2 ** (attempt - 1)), _MAX_RETRY_DELAY_SECONDS)
                logger.debug(
                    "Retrying operation=%s attempt=%d delay=%.3fs",
                    operation,
                    attempt,
                    delay,
                    extra={"account_id": account_id},
                )
                time.sleep(delay)

    # ------------------------------------------------------------------
    # Entry helpers (caller holds the account transaction)
    # ------------------------------------------------------------------

    def find_entry(
        self,
        db: Session,
        account_id: int,
        kind: LedgerKind,
        *,
        related_reservation_id: str | None = None,
        related_event_id: str | None = None,
    ) -> LedgerTransaction | None:
        if related_reservation_id is None and related_event_id is None:
            return None
        query = select(LedgerTransaction).where(
            LedgerTransaction.account_id == account_id,
            LedgerTransaction.kind == kind,
        )
        if related_reservation_id is not None:
            query = query.where(LedgerTransaction.related_reservation_id == related_reservation_id)
        if related_event_id is not None:
            query = query.where(LedgerTransaction.related_event_id == related_event_id)
        return db.execute(query).scalars().first()

    def append_entry(
        self,
        db: Session,
        account: CreditAccount,
        *,
        delta: int,
        kind: LedgerKind,
        pool: CreditPool | None = None,
        breakdown: dict[str, int] | None = None,
        related_reservation_id: str | None = None,
        related_event_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransaction:
        check_invariant(account)
        entry = LedgerTransaction(
            account_id=account.account_id,
            delta=int(delta),
            balance_after=int(account.balance),
            kind=kind,
            pool=pool,
            breakdown=breakdown,
            related_reservation_id=related_reservation_id,
            related_event_id=related_event_id,
            description=description,
            entry_metadata=metadata or {},
            created_at=utcnow(),
        )
        db.add(entry)
        db.flush()
        return entry

    def apply_debit(
        self,
        db: Session,
        account: CreditAccount,
        amount: int,
        breakdown: PoolBreakdown,
        *,
        kind: LedgerKind = LedgerKind.SPEND,
        related_reservation_id: str | None = None,
        description: str | None = None,
    ) -> LedgerTransaction:
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        available = account.pool_total()
        if breakdown.total != amount:
            raise InsufficientCredits(required=amount, available=available)
        if (
            min(breakdown.from_monthly, breakdown.from_rollover, breakdown.from_purchased) < 0
            or breakdown.from_monthly > account.monthly_remaining
            or breakdown.from_rollover > int(account.rollover_amount or 0)
            or breakdown.from_purchased > int(account.purchased_amount or 0)
        ):
            raise InsufficientCredits(required=amount, available=available)

        account.monthly_used = int(account.monthly_used or 0) + breakdown.from_monthly
        account.rollover_amount = int(account.rollover_amount or 0) - breakdown.from_rollover
        account.purchased_amount = int(account.purchased_amount or 0) - breakdown.from_purchased
        account.lifetime_spent = int(account.lifetime_spent or 0) + amount
        return self.append_entry(
            db,
            account,
            delta=-amount,
            kind=kind,
            breakdown=breakdown.as_deltas(-1),
            related_reservation_id=related_reservation_id,
            description=description,
        )

    def apply_restore(
        self,
        db: Session,
        account: CreditAccount,
        breakdown: PoolBreakdown,
        *,
        related_reservation_id: str,
        resolution: str,
        description: str | None = None,
    ) -> LedgerTransaction:
        """Put a reservation's breakdown back into the pools it came from.

        The monthly portion only goes back up to ``monthly_used``; anything
        beyond that belonged to an allocation that has since been revoked.
        """
        used = int(account.monthly_used or 0)
        restored_monthly = min(breakdown.from_monthly, used)
        forfeited_monthly = breakdown.from_monthly - restored_monthly

        account.monthly_used = used - restored_monthly
        account.rollover_amount = int(account.rollover_amount or 0) + breakdown.from_rollover
        account.purchased_amount = int(account.purchased_amount or 0) + breakdown.from_purchased
        account.lifetime_spent = max(0, int(account.lifetime_spent or 0) - breakdown.total)

        restored = restored_monthly + breakdown.from_rollover + breakdown.from_purchased
        metadata: dict[str, Any] = {"resolution": resolution}
        if forfeited_monthly:
            metadata["forfeited_monthly"] = forfeited_monthly
            logger.info(
                "Forfeited %d monthly credits on %s of reservation %s",
                forfeited_monthly,
                resolution,
                related_reservation_id,
                extra={"account_id": account.account_id},
            )
        return self.append_entry(
            db,
            account,
            delta=restored,
            kind=LedgerKind.REFUND,
            breakdown={
                "monthly": restored_monthly,
                "rollover": breakdown.from_rollover,
                "purchased": breakdown.from_purchased,
            },
            related_reservation_id=related_reservation_id,
            description=description,
            metadata=metadata,
        )

    def apply_period_rollover(
        self,
        db: Session,
        account: CreditAccount,
        *,
        now: datetime,
        related_event_id: str,
    ) -> int:
        """Expire the old rollover and move unused monthly credits into a fresh one.

        Leaves the monthly pool fully used; returns the amount carried over.
        """
        previous_rollover = int(account.rollover_amount or 0)
        if previous_rollover > 0:
            account.rollover_amount = 0
            account.rollover_expires_at = None
            self.append_entry(
                db,
                account,
                delta=-previous_rollover,
                kind=LedgerKind.EXPIRE,
                pool=CreditPool.ROLLOVER,
                breakdown={"rollover": -previous_rollover},
                related_event_id=related_event_id,
                description="Previous rollover discarded at period end",
            )

        allocated = int(account.monthly_allocated or 0)
        unused = account.monthly_remaining
        carried = max(0, min(unused, allocated))
        account.monthly_used = allocated
        account.rollover_amount = carried
        account.rollover_expires_at = add_one_month(now) if carried > 0 else None
        self.append_entry(
            db,
            account,
            delta=-(unused - carried),
            kind=LedgerKind.ROLLOVER,
            breakdown={"monthly": -unused, "rollover": carried},
            related_event_id=related_event_id,
            description="Unused monthly credits rolled over",
            metadata={"unused": unused, "carried": carried, "cap": allocated},
        )
        return carried

    def _to_read(self, entry: LedgerTransaction) -> LedgerTransactionRead:
        return LedgerTransactionRead.model_validate(entry)

    def _existing_read(
        self,
        account_id: int,
        kind: LedgerKind,
        *,
        related_reservation_id: str | None = None,
        related_event_id: str | None = None,
    ) -> LedgerTransactionRead | None:
        db = self.session_factory()
        try:
            entry = self.find_entry(
                db,
                account_id,
                kind,
                related_reservation_id=related_reservation_id,
                related_event_id=related_event_id,
            )
            return self._to_read(entry) if entry else None
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def snapshot(self, account_id: int) -> CreditAccountSnapshot:
        self.ensure_account(account_id)
        db = self.session_factory()
        try:
            account = db.execute(
                select(CreditAccount).where(CreditAccount.account_id == account_id)
            ).scalar_one()
            return CreditAccountSnapshot.from_account(account)
        finally:
            db.close()

    def can_afford(self, account_id: int, amount: int) -> bool:
        return self.snapshot(account_id).balance >= int(amount)

    def debit(
        self,
        account_id: int,
        amount: int,
        breakdown: PoolBreakdown,
        *,
        kind: LedgerKind = LedgerKind.SPEND,
        related_reservation_id: str | None = None,
        description: str | None = None,
    ) -> LedgerTransactionRead:
        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(db, account_id, kind, related_reservation_id=related_reservation_id)
            if existing:
                return self._to_read(existing)
            entry = self.apply_debit(
                db,
                account,
                amount,
                breakdown,
                kind=kind,
                related_reservation_id=related_reservation_id,
                description=description,
            )
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="debit")
        except IntegrityError:
            existing = self._existing_read(account_id, kind, related_reservation_id=related_reservation_id)
            if existing is None:
                raise
            return existing

    def credit(
        self,
        account_id: int,
        amount: int,
        pool: CreditPool | str,
        kind: LedgerKind | str,
        *,
        related_reservation_id: str | None = None,
        related_event_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransactionRead:
        """Add ``amount`` credits to one pool; idempotent per (related id, kind).

        Crediting the monthly pool raises its allocation for the current period.
        """
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        pool = CreditPool(pool)
        kind = LedgerKind(kind)

        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(
                db,
                account_id,
                kind,
                related_reservation_id=related_reservation_id,
                related_event_id=related_event_id,
            )
            if existing:
                logger.info(
                    "Ledger credit already applied kind=%s ref=%s",
                    kind.value,
                    related_event_id or related_reservation_id,
                    extra={"account_id": account_id},
                )
                return self._to_read(existing)

            if pool == CreditPool.MONTHLY:
                account.monthly_allocated = int(account.monthly_allocated or 0) + amount
            elif pool == CreditPool.ROLLOVER:
                account.rollover_amount = int(account.rollover_amount or 0) + amount
            else:
                account.purchased_amount = int(account.purchased_amount or 0) + amount
            account.lifetime_earned = int(account.lifetime_earned or 0) + amount
            entry = self.append_entry(
                db,
                account,
                delta=amount,
                kind=kind,
                pool=pool,
                breakdown={pool.value: amount},
                related_reservation_id=related_reservation_id,
                related_event_id=related_event_id,
                description=description,
                metadata=metadata,
            )
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="credit")
        except IntegrityError:
            existing = self._existing_read(
                account_id,
                kind,
                related_reservation_id=related_reservation_id,
                related_event_id=related_event_id,
            )
            if existing is None:
                raise
            return existing

    def refund_purchase(self, account_id: int, refunded_credits: int, payment_intent_id: str) -> LedgerTransactionRead:
        """Bring the credits refunded for one purchase up to ``refunded_credits``.

        ``refunded_credits`` is cumulative over every refund of the payment, so
        a later, larger refund only takes the difference. Credits are removed
        only while still held in the purchased pool.
        """
        refunded_credits = max(0, int(refunded_credits))
        prefix = f"{payment_intent_id}:refund:"
        related_event_id = f"{prefix}{refunded_credits}"

        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(db, account_id, LedgerKind.REFUND, related_event_id=related_event_id)
            if existing:
                return self._to_read(existing)
            earlier = db.execute(
                select(LedgerTransaction).where(
                    LedgerTransaction.account_id == account_id,
                    LedgerTransaction.kind == LedgerKind.REFUND,
                    LedgerTransaction.related_event_id.startswith(prefix, autoescape=True),
                )
            ).scalars()
            already_refunded = sum(int((entry.entry_metadata or {}).get("requested") or 0) for entry in earlier)
            requested = max(0, refunded_credits - already_refunded)
            removed = min(requested, int(account.purchased_amount or 0))
            account.purchased_amount = int(account.purchased_amount or 0) - removed
            if removed < requested:
                logger.warning(
                    "Refund of %d purchased credits only found %d still held",
                    requested,
                    removed,
                    extra={"account_id": account_id},
                )
            entry = self.append_entry(
                db,
                account,
                delta=-removed,
                kind=LedgerKind.REFUND,
                pool=CreditPool.PURCHASED,
                breakdown={"purchased": -removed},
                related_event_id=related_event_id,
                description="Purchased credits refunded",
                metadata={"requested": requested, "removed": removed},
            )
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="refund_purchase")
        except IntegrityError:
            existing = self._existing_read(account_id, LedgerKind.REFUND, related_event_id=related_event_id)
            if existing is None:
                raise
            return existing

    def grant_monthly(
        self,
        account_id: int,
        allocation: int,
        period_end: datetime,
        grant_key: str | None = None,
    ) -> LedgerTransactionRead:
        """Start a subscription period: allocate ``allocation`` monthly credits once per period."""
        allocation = max(0, int(allocation))
        period_end = ensure_utc(period_end)
        key = grant_key or subscription_period_key(account_id, period_end)

        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(db, account_id, LedgerKind.GRANT, related_event_id=key)
            if existing:
                logger.info("Monthly grant already applied key=%s", key, extra={"account_id": account_id})
                return self._to_read(existing)

            reset_at = ensure_utc(account.monthly_reset_at)
            if reset_at is not None and reset_at > period_end:
                # A newer period is already in force; record the grant as seen.
                entry = self.append_entry(
                    db,
                    account,
                    delta=0,
                    kind=LedgerKind.GRANT,
                    pool=CreditPool.MONTHLY,
                    breakdown={"monthly": 0},
                    related_event_id=key,
                    description="Superseded monthly grant",
                    metadata={"allocation": allocation, "superseded_by": reset_at.isoformat()},
                )
                return self._to_read(entry)

            previous_allocation = int(account.monthly_allocated or 0)
            metadata: dict[str, Any] = {"allocation": allocation, "period_end": period_end.isoformat()}
            remaining_before = account.monthly_remaining
            if reset_at is not None and reset_at == period_end and previous_allocation > 0:
                # The monthly reset already opened this period; keep what was spent in it.
                account.monthly_allocated = allocation
                account.monthly_used = min(int(account.monthly_used or 0), allocation)
                metadata["previous_allocation"] = previous_allocation
                description = "Monthly allocation adjusted"
            else:
                if reset_at is not None and reset_at < period_end and previous_allocation > 0:
                    self.apply_period_rollover(db, account, now=utcnow(), related_event_id=key)
                    remaining_before = account.monthly_remaining
                account.monthly_allocated = allocation
                account.monthly_used = 0
                account.monthly_reset_at = period_end
                description = "Monthly subscription credits"

            delta = account.monthly_remaining - remaining_before
            if delta > 0:
                account.lifetime_earned = int(account.lifetime_earned or 0) + delta
            entry = self.append_entry(
                db,
                account,
                delta=delta,
                kind=LedgerKind.GRANT,
                pool=CreditPool.MONTHLY,
                breakdown={"monthly": delta},
                related_event_id=key,
                description=description,
                metadata=metadata,
            )
            logger.info(
                "Granted %d monthly credits until %s",
                allocation,
                period_end.isoformat(),
                extra={"account_id": account_id},
            )
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="grant_monthly")
        except IntegrityError:
            existing = self._existing_read(account_id, LedgerKind.GRANT, related_event_id=key)
            if existing is None:
                raise
            return existing

    def revoke_monthly(self, account_id: int, related_event_id: str) -> LedgerTransactionRead:
        """Drop the monthly allocation; unused monthly credits are discarded."""

        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(db, account_id, LedgerKind.EXPIRE, related_event_id=related_event_id)
            if existing:
                return self._to_read(existing)
            discarded = account.monthly_remaining
            account.monthly_allocated = 0
            account.monthly_used = 0
            account.monthly_reset_at = None
            entry = self.append_entry(
                db,
                account,
                delta=-discarded,
                kind=LedgerKind.EXPIRE,
                pool=CreditPool.MONTHLY,
                breakdown={"monthly": -discarded},
                related_event_id=related_event_id,
                description="Monthly allocation revoked",
            )
            logger.info("Revoked monthly allocation, discarded %d", discarded, extra={"account_id": account_id})
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="revoke_monthly")
        except IntegrityError:
            existing = self._existing_read(account_id, LedgerKind.EXPIRE, related_event_id=related_event_id)
            if existing is None:
                raise
            return existing

    def admin_adjust(
        self,
        account_id: int,
        delta: int,
        pool: CreditPool | str,
        reason: str,
        key: str | None = None,
    ) -> LedgerTransactionRead:
        """Signed manual correction to one pool."""
        delta = int(delta)
        if delta == 0:
            raise ValueError("delta must be non-zero")
        pool = CreditPool(pool)

        def _op(db: Session, account: CreditAccount) -> LedgerTransactionRead:
            existing = self.find_entry(db, account_id, LedgerKind.ADMIN, related_event_id=key)
            if existing:
                return self._to_read(existing)
            if pool == CreditPool.MONTHLY:
                if delta > 0:
                    account.monthly_allocated = int(account.monthly_allocated or 0) + delta
                else:
                    if -delta > account.monthly_remaining:
                        raise InsufficientCredits(required=-delta, available=account.monthly_remaining)
                    account.monthly_used = int(account.monthly_used or 0) - delta
            elif pool == CreditPool.ROLLOVER:
                current = int(account.rollover_amount or 0)
                if current + delta < 0:
                    raise InsufficientCredits(required=-delta, available=current)
                account.rollover_amount = current + delta
            else:
                current = int(account.purchased_amount or 0)
                if current + delta < 0:
                    raise InsufficientCredits(required=-delta, available=current)
                account.purchased_amount = current + delta
            if delta > 0:
                account.lifetime_earned = int(account.lifetime_earned or 0) + delta
            entry = self.append_entry(
                db,
                account,
                delta=delta,
                kind=LedgerKind.ADMIN,
                pool=pool,
                breakdown={pool.value: delta},
                related_event_id=key,
                description=reason,
            )
            logger.warning(
                "Admin adjustment delta=%d pool=%s reason=%s",
                delta,
                pool.value,
                reason,
                extra={"account_id": account_id},
            )
            return self._to_read(entry)

        try:
            return self.execute(account_id, _op, operation="admin_adjust")
        except IntegrityError:
            existing = self._existing_read(account_id, LedgerKind.ADMIN, related_event_id=key)
            if existing is None:
                raise
            return existing

    def list_transactions(
        self,
        account_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: LedgerKind | str | None = None,
    ) -> tuple[list[LedgerTransactionRead], int]:
        limit = max(1, min(int(limit), 200))
        offset = max(0, int(offset))
        db = self.session_factory()
        try:
            filters = [LedgerTransaction.account_id == account_id]
            if kind is not None:
                filters.append(LedgerTransaction.kind == LedgerKind(kind))
            total = db.execute(
                select(func.count()).select_from(LedgerTransaction).where(*filters)
            ).scalar_one()
            rows = (
                db.execute(
                    select(LedgerTransaction)
                    .where(*filters)
                    .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return [self._to_read(row) for row in rows], int(total)
        finally:
            db.close()
