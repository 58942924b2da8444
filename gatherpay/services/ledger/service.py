"""Reference ledger: two-phase reserve -> commit | release with enforced expiry.

Every operation is idempotent per transaction (reserve) or per reservation
(commit, release), so callers may retry freely after a timeout. A HELD
reservation that outlives its server-assigned `expires_at` no longer counts
against the balance and is swept to EXPIRED by the expiry worker.
"""

import asyncio
import time
from datetime import timedelta

from sqlalchemy import func, select, update

from gatherpay.common.config import settings
from gatherpay.common.db import ensure_utc, utcnow
from gatherpay.common.errors import (
    InsufficientFunds,
    ReservationExpired,
    ReservationNotFound,
    ReservationStateError,
)
from gatherpay.common.logging import logger
from gatherpay.common.metrics import reservations_expired_total
from gatherpay.services.ledger.models import Account, LedgerEntry, Reservation

HELD = "HELD"
COMMITTED = "COMMITTED"
RELEASED = "RELEASED"
EXPIRED = "EXPIRED"

PLATFORM_FEE_ACCOUNT = "platform_fee"


def reservation_view(reservation: Reservation) -> dict:
    return {
        "reservation_id": reservation.reservation_id,
        "transaction_id": reservation.transaction_id,
        "source_account": reservation.source_account,
        "dest_account": reservation.dest_account,
        "amount": reservation.amount,
        "currency": reservation.currency,
        "status": reservation.status,
        "expires_at": ensure_utc(reservation.expires_at).isoformat(),
    }


class LedgerService:
    """Owns balances, reservations and double-entry postings."""

    def __init__(self, session_factory, config=settings, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.config = config
        self.service_name = service_name

    def ensure_accounts(self, retries: int = 20) -> None:
        """Bootstrap system accounts; retry during cold-start races."""

        for attempt in range(1, retries + 1):
            try:
                with self.session_factory() as db:
                    if not db.get(Account, PLATFORM_FEE_ACCOUNT):
                        db.add(Account(account_id=PLATFORM_FEE_ACCOUNT, account_type="PLATFORM", balance=0))
                    db.commit()
                    return
            except Exception as exc:
                logger.warning("ledger account bootstrap retry=%s/%s error=%s", attempt, retries, exc)
                if attempt == retries:
                    raise
                time.sleep(1)

    def open_account(self, account_id: str, balance: int = 0, account_type: str = "CUSTOMER") -> Account:
        with self.session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                account = Account(account_id=account_id, account_type=account_type, balance=balance)
                db.add(account)
                db.commit()
            return account

    def get_account(self, account_id: str) -> Account | None:
        with self.session_factory() as db:
            return db.get(Account, account_id)

    def available_balance(self, db, account_id: str, exclude_transaction: str | None = None) -> int:
        account = db.get(Account, account_id)
        if account is None:
            return 0
        query = select(func.coalesce(func.sum(Reservation.amount), 0)).where(
            Reservation.source_account == account_id,
            Reservation.status == HELD,
            Reservation.expires_at > utcnow(),
        )
        if exclude_transaction is not None:
            query = query.where(Reservation.transaction_id != exclude_transaction)
        return account.balance - int(db.execute(query).scalar_one())

    async def reserve(
        self,
        transaction_id: str,
        source_account: str,
        amount: int,
        dest_account: str,
        currency: str,
        expiry_ms: int | None = None,
    ) -> dict:
        """Hold `amount` on the source account; repeat calls return the same hold.

        A hold the caller already released is returned unchanged, so a
        redelivered reserve after compensation cannot lock funds again.
        """

        # The server bounds how long funds may stay locked, whatever the caller asks for.
        hold_ms = min(expiry_ms or self.config.reservation_expiry_ms, self.config.reservation_expiry_ms)
        now = utcnow()
        with self.session_factory() as db:
            existing = db.execute(
                select(Reservation).where(Reservation.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if existing is not None:
                live_hold = existing.status == HELD and ensure_utc(existing.expires_at) > now
                if live_hold or existing.status in (COMMITTED, RELEASED):
                    return reservation_view(existing)

            if db.get(Account, source_account) is None:
                raise InsufficientFunds(f"unknown account {source_account}", {"account_id": source_account})
            available = self.available_balance(db, source_account, exclude_transaction=transaction_id)
            if available < amount:
                raise InsufficientFunds(
                    "insufficient available balance",
                    {"account_id": source_account, "available": available, "requested": amount},
                )

            expires_at = now + timedelta(milliseconds=hold_ms)
            if existing is None:
                existing = Reservation(
                    transaction_id=transaction_id,
                    source_account=source_account,
                    dest_account=dest_account,
                    amount=amount,
                    currency=currency,
                    status=HELD,
                    expires_at=expires_at,
                )
                db.add(existing)
            else:
                # Only a lapsed hold is re-armed; a released one stays released.
                existing.status = HELD
                existing.amount = amount
                existing.expires_at = expires_at
            db.commit()
            logger.info(
                "reservation_held transaction_id=%s reservation_id=%s amount=%s expires_at=%s",
                transaction_id,
                existing.reservation_id,
                amount,
                expires_at.isoformat(),
            )
            return reservation_view(existing)

    def _post_entry(self, db, tx_id: str, account_id: str, direction: str, amount: int) -> None:
        """Insert one ledger row and update the account balance snapshot."""

        db.add(LedgerEntry(transaction_id=tx_id, account_id=account_id, direction=direction, amount=amount))
        account = db.get(Account, account_id)
        if account is None:
            account = Account(account_id=account_id, account_type="CUSTOMER", balance=0)
            db.add(account)
            db.flush()
        if direction == "DEBIT":
            account.balance -= amount
        else:
            account.balance += amount

    async def commit(self, reservation_id: str, fee: int = 0) -> dict:
        """Turn a live hold into balanced postings; committing twice is a no-op."""

        with self.session_factory() as db:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFound(f"reservation {reservation_id} not found")
            if reservation.status == COMMITTED:
                return reservation_view(reservation)
            if reservation.status == EXPIRED or (
                reservation.status == HELD and ensure_utc(reservation.expires_at) <= utcnow()
            ):
                if reservation.status == HELD:
                    reservation.status = EXPIRED
                    db.commit()
                    reservations_expired_total.labels(service=self.service_name).inc()
                raise ReservationExpired(f"reservation {reservation_id} expired before commit")
            if reservation.status != HELD:
                raise ReservationStateError(f"reservation {reservation_id} is {reservation.status}")
            if not 0 <= fee <= reservation.amount:
                raise ReservationStateError(f"fee {fee} out of range for reservation {reservation_id}")

            tx_id = reservation.transaction_id
            self._post_entry(db, tx_id, reservation.source_account, "DEBIT", reservation.amount)
            self._post_entry(db, tx_id, reservation.dest_account, "CREDIT", reservation.amount - fee)
            if fee:
                self._post_entry(db, tx_id, PLATFORM_FEE_ACCOUNT, "CREDIT", fee)
            db.flush()

            entries = db.execute(select(LedgerEntry).where(LedgerEntry.transaction_id == tx_id)).scalars().all()
            # Every transaction must balance debits and credits.
            debits = sum(e.amount for e in entries if e.direction == "DEBIT")
            credits = sum(e.amount for e in entries if e.direction == "CREDIT")
            if debits != credits:
                raise ValueError("ledger imbalance detected")

            reservation.status = COMMITTED
            db.commit()
            logger.info(
                "reservation_committed transaction_id=%s reservation_id=%s amount=%s fee=%s",
                tx_id,
                reservation_id,
                reservation.amount,
                fee,
            )
            return reservation_view(reservation)

    async def release(self, reservation_id: str) -> dict:
        """Drop a hold; releasing a released or expired hold is a no-op."""

        with self.session_factory() as db:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFound(f"reservation {reservation_id} not found")
            if reservation.status == COMMITTED:
                raise ReservationStateError(f"reservation {reservation_id} is already committed")
            if reservation.status == HELD:
                reservation.status = RELEASED
                db.commit()
                logger.info(
                    "reservation_released transaction_id=%s reservation_id=%s",
                    reservation.transaction_id,
                    reservation_id,
                )
            return reservation_view(reservation)

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self.session_factory() as db:
            return db.get(Reservation, reservation_id)

    def expire_due(self) -> int:
        """Mark lapsed HELD reservations EXPIRED; returns how many were swept."""

        with self.session_factory() as db:
            result = db.execute(
                update(Reservation)
                .where(Reservation.status == HELD, Reservation.expires_at <= utcnow())
                .values(status=EXPIRED, updated_at=utcnow())
            )
            db.commit()
        expired = result.rowcount or 0
        if expired:
            reservations_expired_total.labels(service=self.service_name).inc(expired)
            logger.info("reservations_expired count=%s", expired)
        return expired

    async def expiry_worker(self, poll_seconds: float = 1.0) -> None:
        while True:
            try:
                self.expire_due()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reservation_expiry_error: %s", exc)
            await asyncio.sleep(poll_seconds)
