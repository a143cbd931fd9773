"""Payment and refund persistence with explicit transactions.

Write methods take the session yielded by `transaction()` so that a payment
row, its refund and its timeline entries commit together or not at all. Read
methods accept an optional session and otherwise open a short one.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payroute.common.errors import PersistenceError
from payroute.common.state_machine import validate_transition
from payroute.services.orchestrator.models import Payment, PaymentTimeline, Refund


class PaymentRepository:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """All-or-nothing unit of work: commit on clean exit, roll back otherwise."""

        db = self.session_factory()
        try:
            yield db
            db.commit()
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _reader(self, db: Session | None) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        with self.session_factory() as own:
            yield own

    def create(self, db: Session, payment: Payment) -> Payment:
        db.add(payment)
        db.flush()
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=None,
                to_state=payment.status,
                reason="payment_created",
            )
        )
        db.flush()
        return payment

    def update(self, db: Session, payment: Payment, new_status: str, reason: str) -> Payment:
        """Apply one validated status change with optimistic concurrency.

        The write is guarded by `(payment_id, status, state_version)` so a
        stale concurrent update cannot succeed.
        """

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version

        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == from_status,
                Payment.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PersistenceError(
                f"optimistic concurrency conflict for payment {payment.payment_id} "
                f"(expected version {current_version})"
            )

        payment.status = new_status
        payment.state_version = current_version + 1
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
            )
        )
        db.flush()
        return payment

    def get_by_id(self, payment_id: str, db: Session | None = None) -> Payment | None:
        with self._reader(db) as session:
            return session.get(Payment, payment_id)

    def get_by_provider_charge_id(self, provider_charge_id: str, db: Session | None = None) -> Payment | None:
        with self._reader(db) as session:
            return session.execute(
                select(Payment).where(Payment.provider_charge_id == provider_charge_id)
            ).scalar_one_or_none()

    def get_by_idempotency_key(self, idempotency_key: str, db: Session | None = None) -> Payment | None:
        with self._reader(db) as session:
            return session.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            ).scalar_one_or_none()

    def create_refund(self, db: Session, refund: Refund) -> Refund:
        db.add(refund)
        db.flush()
        return refund

    def get_refund_by_id(self, refund_id: str, db: Session | None = None) -> Refund | None:
        with self._reader(db) as session:
            return session.get(Refund, refund_id)

    def list_refunds(self, payment_id: str, db: Session | None = None) -> list[Refund]:
        with self._reader(db) as session:
            return list(
                session.execute(
                    select(Refund).where(Refund.payment_id == payment_id).order_by(Refund.created_at)
                ).scalars()
            )

    def list_timeline(self, payment_id: str, db: Session | None = None) -> list[PaymentTimeline]:
        with self._reader(db) as session:
            return list(
                session.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.created_at)
                ).scalars()
            )

    def list_unmapped_payments(self, mapped_ids: set[str], limit: int = 500) -> list[Payment]:
        """Payments whose provider charge id is not in `mapped_ids`."""

        with self.session_factory() as db:
            rows = db.execute(select(Payment).order_by(Payment.created_at)).scalars()
            unmapped = [p for p in rows if p.provider_charge_id not in mapped_ids]
        return unmapped[:limit]
