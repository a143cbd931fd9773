"""Idempotent, transactional charge and refund orchestration.

A charge runs inside one repository transaction: pick the provider, call it
through the executor (retries plus circuit breaker), then persist. A provider
failure rolls the transaction back. A persistence failure after the provider
already moved money cannot be rolled back locally: the charge gets a detached
compensating refund.

A charge attempt that outlives the call timeout is never retried. The
abandoned call is followed in the background: a late success with no recorded
payment is refunded, an outcome that stays unknown raises a critical alert.

A refund first claims the payment (`succeeded -> refund_pending`) in its own
transaction, so concurrent refunds of one payment cannot both reach the
provider. A definite provider failure releases the claim; a refund that moved
money but could not be recorded raises a critical alert.
"""

import asyncio
import secrets
from dataclasses import replace

from sqlalchemy.exc import IntegrityError

from payroute.common.alerts import AlertManager
from payroute.common.errors import (
    CircuitOpenError,
    CircuitTimeoutError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    ProviderDeclinedError,
    ProviderError,
)
from payroute.common.logging import idempotency_key_ctx, logger, payment_id_ctx, provider_ctx
from payroute.common.metrics import MetricsSink
from payroute.common.retry import RetryPolicy, provider_retryable
from payroute.common.state_machine import REFUND_PENDING
from payroute.services.orchestrator.models import Payment, Refund
from payroute.services.orchestrator.repository import PaymentRepository
from payroute.services.provider_adapter.base import PaymentProvider
from payroute.services.provider_adapter.executor import ProviderExecutor
from payroute.services.provider_adapter.schemas import (
    ChargeRequest,
    ChargeResponse,
    PaymentStatus,
    RefundRequest,
)
from payroute.services.provider_adapter.selector import MultiProviderSelector

# Charges retry aggressively with a short base delay; refunds are slower and fewer.
CHARGE_RETRY_POLICY = RetryPolicy(max_retries=4, initial_delay=0.05, max_delay=2.0, retryable=provider_retryable)
REFUND_RETRY_POLICY = RetryPolicy(max_retries=2, initial_delay=0.5, max_delay=5.0, retryable=provider_retryable)

COMPENSATION_REASON = "Transaction rollback due to database error"


def without_timeout_retries(policy: RetryPolicy) -> RetryPolicy:
    """Copy of `policy` that gives up as soon as a call times out."""

    retryable = policy.retryable
    return replace(policy, retryable=lambda exc: not isinstance(exc, CircuitTimeoutError) and retryable(exc))


class PaymentService:
    """Owns Payment/Refund rows; the only writer of both tables."""

    def __init__(
        self,
        repository: PaymentRepository,
        selector: MultiProviderSelector,
        executor: ProviderExecutor,
        alerts: AlertManager | None = None,
        metrics: MetricsSink | None = None,
        charge_policy: RetryPolicy = CHARGE_RETRY_POLICY,
        refund_policy: RetryPolicy = REFUND_RETRY_POLICY,
        compensation_timeout: float = 30.0,
    ) -> None:
        self.repository = repository
        self.selector = selector
        self.executor = executor
        self.alerts = alerts or AlertManager()
        self.metrics = metrics or MetricsSink()
        # A timed-out charge may still succeed at the provider.
        self.charge_policy = without_timeout_retries(charge_policy)
        self.refund_policy = refund_policy
        self.compensation_timeout = compensation_timeout
        self._background: set[asyncio.Task] = set()

    @staticmethod
    def _validate_charge(req: ChargeRequest) -> None:
        if req.amount <= 0:
            raise InvalidRequestError("amount must be positive")
        if not req.currency:
            raise InvalidRequestError("currency is required")
        if not req.payment_method:
            raise InvalidRequestError("payment method is required")
        if not req.customer_id:
            raise InvalidRequestError("customer id is required")

    async def create_charge(self, req: ChargeRequest) -> Payment:
        """Charge once per idempotency key and persist the payment.

        Replaying a key returns the stored payment without calling a provider.
        """

        self._validate_charge(req)
        token = secrets.token_hex(16)
        idempotency_key = req.idempotency_key or token
        idempotency_key_ctx.set(idempotency_key)

        if req.idempotency_key:
            existing = self.repository.get_by_idempotency_key(req.idempotency_key)
            if existing is not None:
                logger.info(
                    "idempotent charge replay payment_id=%s idempotency_key=%s",
                    existing.payment_id,
                    req.idempotency_key,
                )
                return existing

        provider = await self.selector.select_provider_by_currency(req.currency)
        provider_ctx.set(provider.name())
        provider_req = req.model_copy(update={"currency": req.currency.upper(), "idempotency_key": idempotency_key})

        def follow_abandoned(call: asyncio.Future) -> None:
            self._spawn(self._settle_abandoned_charge(provider, call, idempotency_key))

        resp: ChargeResponse | None = None
        with self.metrics.latency("charge"):
            try:
                with self.repository.transaction() as db:
                    resp = await self._call_provider(
                        provider,
                        "charge",
                        lambda: self.selector.charge(provider_req, provider=provider),
                        self.charge_policy,
                        on_abandoned=follow_abandoned,
                    )
                    payment = self._payment_from_response(req, resp, idempotency_key)
                    self.repository.create(db, payment)
            except Exception as exc:
                if resp is None:
                    self.metrics.error("charge", type(exc).__name__)
                    raise
                if isinstance(exc, IntegrityError) and req.idempotency_key:
                    existing = self.repository.get_by_idempotency_key(req.idempotency_key)
                    if existing is not None:
                        return self._settle_duplicate_charge(provider, resp, existing)
                self.metrics.error("charge", "persistence")
                logger.error(
                    "charge persistence failed provider=%s provider_charge_id=%s error=%s",
                    provider.name(),
                    resp.id,
                    exc,
                )
                self._schedule_compensation(provider, resp)
                raise PersistenceError(f"failed to record charge {resp.id}: {exc}") from exc

        payment_id_ctx.set(payment.payment_id)
        self.metrics.payment(provider.name(), payment.currency, payment.status)
        logger.info(
            "charge recorded payment_id=%s provider=%s status=%s amount=%s currency=%s",
            payment.payment_id,
            provider.name(),
            payment.status,
            payment.amount,
            payment.currency,
        )
        return payment

    def _settle_duplicate_charge(self, provider: PaymentProvider, resp: ChargeResponse, existing: Payment) -> Payment:
        """A concurrent request with the same key recorded its payment first."""

        if existing.provider_charge_id != resp.id:
            logger.warning(
                "duplicate charge for idempotency key payment_id=%s provider_charge_id=%s duplicate=%s",
                existing.payment_id,
                existing.provider_charge_id,
                resp.id,
            )
            self._schedule_compensation(provider, resp)
        logger.info(
            "idempotent charge replay payment_id=%s idempotency_key=%s", existing.payment_id, existing.idempotency_key
        )
        return existing

    async def create_refund(self, req: RefundRequest) -> Refund:
        """Refund a succeeded payment through the provider that charged it."""

        if req.amount <= 0:
            raise InvalidRequestError("amount must be positive")
        if not req.payment_id:
            raise InvalidRequestError("payment id is required")
        payment_id_ctx.set(req.payment_id)

        payment = self._claim_for_refund(req)
        provider_ctx.set(payment.provider_name)
        provider_req = RefundRequest(
            payment_id=payment.provider_charge_id,
            amount=req.amount,
            currency=payment.currency,
            reason=req.reason,
            idempotency_key=req.idempotency_key or f"refund_{payment.payment_id}",
            metadata=req.metadata,
        )
        idempotency_key_ctx.set(provider_req.idempotency_key)

        with self.metrics.latency("refund"):
            try:
                resp = await self._call_provider(
                    self.selector.provider_by_name(payment.provider_name),
                    "refund",
                    lambda: self.selector.refund(provider_req, fallback_provider=payment.provider_name),
                    self.refund_policy,
                )
            except Exception as exc:
                # Cancellation keeps the claim: the refund may have reached the provider.
                self.metrics.error("refund", type(exc).__name__)
                self._release_refund_claim(payment.payment_id, exc)
                raise
            try:
                with self.repository.transaction() as db:
                    claimed = self.repository.get_by_id(payment.payment_id, db)
                    self.repository.update(db, claimed, PaymentStatus.REFUNDED.value, reason="refund")
                    refund = Refund(
                        payment_id=payment.payment_id,
                        amount=resp.amount,
                        currency=payment.currency,
                        reason=req.reason,
                        status=resp.status,
                        provider_name=resp.provider_name or payment.provider_name,
                        provider_refund_id=resp.provider_refund_id or resp.id,
                        metadata_=dict(req.metadata),
                    )
                    self.repository.create_refund(db, refund)
            except Exception as exc:
                self.metrics.error("refund", "persistence")
                logger.critical(
                    "refund persistence failed payment_id=%s provider_refund_id=%s error=%s",
                    req.payment_id,
                    resp.id,
                    exc,
                )
                self.alerts.critical(
                    "Refund Recording Failed",
                    f"refund {resp.id} for payment {req.payment_id} succeeded at the provider "
                    f"but was not recorded: {exc}",
                    source="payment_service",
                    payment_id=req.payment_id,
                    provider_refund_id=resp.id,
                )
                raise PersistenceError(f"failed to record refund {resp.id}: {exc}") from exc

        self.metrics.refund(refund.provider_name, refund.status)
        logger.info(
            "refund recorded refund_id=%s payment_id=%s amount=%s", refund.refund_id, refund.payment_id, refund.amount
        )
        return refund

    def _claim_for_refund(self, req: RefundRequest) -> Payment:
        """Validate the refund and move the payment to `refund_pending`.

        The status update is guarded by status and version, so of two
        concurrent claims only one commits.
        """

        with self.repository.transaction() as db:
            payment = self.repository.get_by_id(req.payment_id, db)
            if payment is None:
                raise NotFoundError(f"payment not found: {req.payment_id}")
            if payment.status != PaymentStatus.SUCCESS.value:
                raise InvalidRequestError(f"payment {payment.payment_id} is {payment.status}, not refundable")
            if req.amount > payment.amount:
                raise InvalidRequestError("refund amount exceeds original payment amount")
            try:
                self.repository.update(db, payment, REFUND_PENDING, reason="refund_requested")
            except PersistenceError as exc:
                raise InvalidRequestError(f"payment {payment.payment_id} is already being refunded") from exc
        return payment

    def _release_refund_claim(self, payment_id: str, cause: BaseException) -> None:
        try:
            with self.repository.transaction() as db:
                payment = self.repository.get_by_id(payment_id, db)
                self.repository.update(db, payment, PaymentStatus.SUCCESS.value, reason="refund_failed")
        except Exception as exc:
            logger.error("refund claim release failed payment_id=%s error=%s", payment_id, exc)
            self.alerts.warning(
                "Refund Claim Stuck",
                f"payment {payment_id} stays {REFUND_PENDING} after a failed refund ({cause}): {exc}",
                source="payment_service",
                payment_id=payment_id,
            )
            return
        logger.info("refund claim released payment_id=%s error=%s", payment_id, cause)

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.repository.get_by_id(payment_id)
        if payment is None:
            raise NotFoundError(f"payment not found: {payment_id}")
        return payment

    def get_refund(self, refund_id: str) -> Refund:
        refund = self.repository.get_refund_by_id(refund_id)
        if refund is None:
            raise NotFoundError(f"refund not found: {refund_id}")
        return refund

    def list_refunds(self, payment_id: str) -> list[Refund]:
        return self.repository.list_refunds(self.get_payment(payment_id).payment_id)

    async def _call_provider(
        self, provider: PaymentProvider, operation: str, fn, policy: RetryPolicy, on_abandoned=None
    ):
        """Run a provider call through the executor, normalizing its failures.

        Provider errors and an open circuit surface unchanged; anything else
        (retries exhausted, call timeout) becomes a `ProviderError`. A call
        left running by a timeout is handed to `on_abandoned`.
        """

        try:
            return await self.executor.call(provider.name(), operation, fn, policy=policy)
        except (ProviderError, CircuitOpenError, InvalidRequestError):
            raise
        except CircuitTimeoutError as exc:
            if on_abandoned is not None and exc.call is not None:
                on_abandoned(exc.call)
            raise ProviderError(provider.name(), operation, str(exc)) from exc
        except Exception as exc:
            raise ProviderError(provider.name(), operation, str(exc)) from exc

    @staticmethod
    def _payment_from_response(req: ChargeRequest, resp: ChargeResponse, idempotency_key: str) -> Payment:
        return Payment(
            customer_id=req.customer_id,
            amount=resp.amount,
            currency=resp.currency.upper(),
            status=resp.status.value,
            payment_method=req.payment_method,
            description=req.description,
            provider_name=resp.provider_name,
            provider_charge_id=resp.id,
            capture_method=resp.capture_method.value,
            captured_amount=resp.captured_amount,
            next_action_type=resp.next_action.type if resp.next_action else None,
            next_action_url=resp.next_action.redirect_url if resp.next_action else None,
            idempotency_key=idempotency_key,
            metadata_=dict(req.metadata),
        )

    # ------------------------------------------------------------------
    # compensation

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_compensation(self, provider: PaymentProvider, resp: ChargeResponse) -> None:
        self._spawn(self._compensate(provider, resp))

    async def _settle_abandoned_charge(self, provider: PaymentProvider, call: asyncio.Future, idempotency_key: str):
        """Wait out a charge the caller stopped waiting for.

        The request already failed, so a late success with no payment row is
        money taken without a record and gets refunded.
        """

        try:
            resp = await asyncio.wait_for(asyncio.shield(call), self.compensation_timeout)
        except (ProviderDeclinedError, InvalidRequestError) as exc:
            logger.info("abandoned charge rejected provider=%s error=%s", provider.name(), exc)
            return
        except Exception as exc:
            self.metrics.compensation("unknown")
            logger.critical(
                "abandoned charge outcome unknown provider=%s idempotency_key=%s error=%r",
                provider.name(),
                idempotency_key,
                exc,
            )
            self.alerts.critical(
                "Charge Outcome Unknown",
                f"charge at {provider.name()} with idempotency key {idempotency_key} timed out "
                f"and did not settle: {exc!r}",
                source="payment_service",
                provider=provider.name(),
                idempotency_key=idempotency_key,
            )
            return

        if self.repository.get_by_provider_charge_id(resp.id) is not None:
            logger.info("abandoned charge already recorded provider_charge_id=%s", resp.id)
            return
        logger.warning(
            "abandoned charge succeeded late provider=%s provider_charge_id=%s amount=%s",
            provider.name(),
            resp.id,
            resp.amount,
        )
        await self._compensate(provider, resp)

    async def _compensate(self, provider: PaymentProvider, resp: ChargeResponse) -> None:
        """Single refund attempt reversing a charge that was never recorded."""

        req = RefundRequest(
            payment_id=resp.id,
            amount=resp.amount,
            currency=resp.currency,
            reason=COMPENSATION_REASON,
            idempotency_key=f"compensation_{resp.id}",
        )
        try:
            await asyncio.wait_for(provider.refund(req), self.compensation_timeout)
        except Exception as exc:
            self.metrics.compensation("failed")
            logger.critical(
                "compensating refund failed provider=%s provider_charge_id=%s error=%s", provider.name(), resp.id, exc
            )
            self.alerts.critical(
                "Payment Cleanup Failed",
                f"charge {resp.id} at {provider.name()} for {resp.amount} {resp.currency} was not recorded "
                f"and could not be refunded: {exc}",
                source="payment_service",
                provider=provider.name(),
                provider_charge_id=resp.id,
                amount=resp.amount,
                currency=resp.currency,
            )
            return
        self.metrics.compensation("succeeded")
        logger.warning("compensating refund issued provider=%s provider_charge_id=%s", provider.name(), resp.id)

    async def wait_for_compensations(self) -> None:
        """Drain compensations and abandoned-charge follow-ups (shutdown, tests)."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
