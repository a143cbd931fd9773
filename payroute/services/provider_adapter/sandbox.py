"""In-memory sandbox providers.

Simulate an external payment provider: every capability interface is
implemented, but only the ones enabled in the provider's capability flags are
visible to the registry. Outcomes can be steered for local runs and tests:

* a customer id starting with `decline_` is rejected (non-retryable);
* a customer id starting with `timeout_` fails transiently on every attempt;
* `failure_rate` injects random transient failures;
* `fail_next(n)` makes the next `n` money-moving calls fail transiently.
"""

import asyncio
import random
from datetime import datetime, timezone
from uuid import uuid4

from payroute.common.errors import InvalidRequestError, NotFoundError, ProviderDeclinedError, ProviderError
from payroute.common.logging import logger
from payroute.services.provider_adapter.base import (
    BalanceProvider,
    CaptureProvider,
    InvoiceProvider,
    PaymentMethodProvider,
    PaymentProvider,
    PaymentSessionProvider,
    PayoutProvider,
    ProviderCapabilities,
    ThreeDSecureProvider,
    VoidProvider,
)
from payroute.services.provider_adapter.schemas import (
    Balance,
    CaptureMethod,
    ChargeResponse,
    Customer,
    Dispute,
    DisputeStats,
    Evidence,
    Invoice,
    NextAction,
    PaymentMethod,
    PaymentSession,
    PaymentStatus,
    Payout,
    PayoutChannel,
    Plan,
    RefundResponse,
    Subscription,
    ThreeDSecureSession,
)
from payroute.services.provider_adapter.schemas import PaymentMethodType as PM

DECLINE_PREFIX = "decline_"
TIMEOUT_PREFIX = "timeout_"

SANDBOX_PROFILES: dict[str, ProviderCapabilities] = {
    "stripe": ProviderCapabilities(
        supports_invoices=True,
        supports_payouts=True,
        supports_payment_sessions=True,
        supports_3ds=True,
        supports_manual_capture=True,
        supports_balance=True,
        supported_currencies=frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "JPY"}),
        supported_payment_methods=frozenset({PM.CARD, PM.BANK_TRANSFER, PM.DIRECT_DEBIT}),
    ),
    "xendit": ProviderCapabilities(
        supports_invoices=True,
        supports_payouts=True,
        supports_payment_sessions=True,
        supports_3ds=True,
        supports_manual_capture=True,
        supports_balance=True,
        supported_currencies=frozenset({"IDR", "PHP", "VND", "THB", "MYR", "SGD"}),
        supported_payment_methods=frozenset(
            {PM.CARD, PM.EWALLET, PM.VIRTUAL_ACCOUNT, PM.QR_CODE, PM.DIRECT_DEBIT}
        ),
    ),
    "razorpay": ProviderCapabilities(
        supports_invoices=True,
        supports_payouts=True,
        supports_payment_sessions=True,
        supports_3ds=True,
        supports_manual_capture=True,
        supports_balance=False,
        supported_currencies=frozenset({"INR"}),
        supported_payment_methods=frozenset({PM.CARD, PM.UPI, PM.NETBANKING, PM.EWALLET}),
    ),
    "airwallex": ProviderCapabilities(
        supports_invoices=True,
        supports_payouts=True,
        supports_payment_sessions=True,
        supports_3ds=True,
        supports_manual_capture=True,
        supports_balance=True,
        supported_currencies=frozenset(
            {"USD", "EUR", "GBP", "AUD", "NZD", "HKD", "SGD", "CNY", "JPY", "CAD", "CHF"}
        ),
        supported_payment_methods=frozenset({PM.CARD, PM.BANK_TRANSFER, PM.EWALLET}),
    ),
}


class SandboxProvider(
    PaymentProvider,
    InvoiceProvider,
    PayoutProvider,
    PaymentSessionProvider,
    PaymentMethodProvider,
    BalanceProvider,
    CaptureProvider,
    VoidProvider,
    ThreeDSecureProvider,
):
    """Simulated provider keeping all state in process memory."""

    def __init__(
        self,
        name: str,
        capabilities: ProviderCapabilities | None = None,
        failure_rate: float = 0.0,
        latency_seconds: float = 0.0,
        available: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self._name = name
        self._capabilities = capabilities or SANDBOX_PROFILES.get(name, ProviderCapabilities())
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.available = available
        self._rng = rng or random.Random()
        self._forced_failures = 0
        self.calls: list[str] = []
        self.charges: dict[str, ChargeResponse] = {}
        self.refunds: dict[str, RefundResponse] = {}
        # idempotency key -> charge/refund id, as providers dedupe repeated requests
        self._charge_keys: dict[str, str] = {}
        self._refund_keys: dict[str, str] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.plans: dict[str, Plan] = {}
        self.disputes: dict[str, Dispute] = {}
        self.evidence: dict[str, list[Evidence]] = {}
        self.customers: dict[str, Customer] = {}
        self.invoices: dict[str, Invoice] = {}
        self.payouts: dict[str, Payout] = {}
        self.sessions: dict[str, PaymentSession] = {}
        self.payment_methods: dict[str, PaymentMethod] = {}

    def name(self) -> str:
        return self._name

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def is_available(self) -> bool:
        return self.available

    def fail_next(self, count: int = 1) -> None:
        self._forced_failures += count

    def _new_id(self, prefix: str) -> str:
        return f"{self._name[:3]}_{prefix}_{uuid4().hex[:24]}"

    async def _simulate(self, operation: str, customer_id: str = "") -> None:
        """Record the call and decide whether it fails."""

        self.calls.append(operation)
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if customer_id.startswith(DECLINE_PREFIX):
            raise ProviderDeclinedError(self._name, operation, "card_declined")
        if customer_id.startswith(TIMEOUT_PREFIX):
            raise ProviderError(self._name, operation, "PROVIDER_TIMEOUT")
        if self._forced_failures > 0:
            self._forced_failures -= 1
            raise ProviderError(self._name, operation, "PROVIDER_TIMEOUT")
        if self.failure_rate and self._rng.random() < self.failure_rate:
            logger.info("sandbox_injected_failure provider=%s operation=%s", self._name, operation)
            raise ProviderError(self._name, operation, "PROVIDER_TIMEOUT")

    def _lookup(self, store: dict, kind: str, entity_id: str):
        try:
            return store[entity_id]
        except KeyError:
            raise NotFoundError(f"{kind} not found: {entity_id}") from None

    # charges and refunds

    async def charge(self, req):
        await self._simulate("charge", req.customer_id)
        if req.idempotency_key in self._charge_keys:
            return self.charges[self._charge_keys[req.idempotency_key]].model_copy()
        currency = req.currency.upper()
        if self._capabilities.supported_currencies and currency not in self._capabilities.supported_currencies:
            raise ProviderDeclinedError(self._name, "charge", f"currency {currency} not supported")
        next_action = None
        captured = req.amount
        if req.capture_method == CaptureMethod.MANUAL:
            status, captured = PaymentStatus.REQUIRES_CAPTURE, 0
        elif req.payment_method.startswith("pm_3ds") and self._capabilities.supports_3ds:
            status, captured = PaymentStatus.REQUIRES_ACTION, 0
            next_action = NextAction(type="redirect_to_url", redirect_url=req.return_url)
        else:
            status = PaymentStatus.SUCCESS
        charge_id = self._new_id("ch")
        resp = ChargeResponse(
            id=charge_id,
            customer_id=req.customer_id,
            amount=req.amount,
            currency=currency,
            status=status,
            payment_method=req.payment_method,
            description=req.description,
            provider_charge_id=charge_id,
            capture_method=req.capture_method,
            captured_amount=captured,
            next_action=next_action,
            metadata=dict(req.metadata),
        )
        self.charges[charge_id] = resp
        if req.idempotency_key:
            self._charge_keys[req.idempotency_key] = charge_id
        return resp.model_copy()

    async def refund(self, req):
        await self._simulate("refund")
        if req.idempotency_key in self._refund_keys:
            return self.refunds[self._refund_keys[req.idempotency_key]].model_copy()
        charge = self.charges.get(req.payment_id)
        if charge is None:
            raise ProviderDeclinedError(self._name, "refund", f"no such charge {req.payment_id}")
        refunded = sum(r.amount for r in self.refunds.values() if r.payment_id == req.payment_id)
        if req.amount <= 0 or refunded + req.amount > charge.amount:
            raise ProviderDeclinedError(self._name, "refund", "amount exceeds refundable balance")
        refund_id = self._new_id("re")
        resp = RefundResponse(
            id=refund_id,
            payment_id=req.payment_id,
            amount=req.amount,
            currency=req.currency or charge.currency,
            reason=req.reason,
            provider_refund_id=refund_id,
            metadata=dict(req.metadata),
        )
        self.refunds[refund_id] = resp
        if req.idempotency_key:
            self._refund_keys[req.idempotency_key] = refund_id
        return resp.model_copy()

    async def capture_payment(self, payment_id, amount):
        await self._simulate("capture_payment")
        charge = self._lookup(self.charges, "payment", payment_id)
        if charge.status != PaymentStatus.REQUIRES_CAPTURE:
            raise InvalidRequestError(f"payment {payment_id} is not awaiting capture")
        if amount > charge.amount:
            raise InvalidRequestError("capture amount exceeds authorized amount")
        charge.status = PaymentStatus.SUCCESS
        charge.captured_amount = amount

    async def void_payment(self, payment_id):
        await self._simulate("void_payment")
        charge = self._lookup(self.charges, "payment", payment_id)
        if charge.status != PaymentStatus.REQUIRES_CAPTURE:
            raise InvalidRequestError(f"payment {payment_id} cannot be voided")
        charge.status = PaymentStatus.CANCELED

    async def create_3ds_session(self, payment_id, return_url):
        await self._simulate("create_3ds_session")
        self._lookup(self.charges, "payment", payment_id)
        return ThreeDSecureSession(
            payment_id=payment_id,
            client_secret=f"{payment_id}_secret",
            redirect_url=f"https://sandbox.{self._name}.test/3ds/{payment_id}?return_url={return_url}",
            status="requires_action",
        )

    async def confirm_3ds_payment(self, payment_id):
        await self._simulate("confirm_3ds_payment")
        charge = self._lookup(self.charges, "payment", payment_id)
        if charge.status == PaymentStatus.REQUIRES_ACTION:
            charge.status = PaymentStatus.SUCCESS
            charge.captured_amount = charge.amount
            charge.next_action = None
        return charge.model_copy()

    # subscriptions and plans

    async def create_subscription(self, req):
        await self._simulate("create_subscription", req.customer_id)
        sub = Subscription(
            id=self._new_id("sub"),
            customer_id=req.customer_id,
            plan_id=req.plan_id,
            status="active",
            quantity=req.quantity,
            metadata=dict(req.metadata),
        )
        self.subscriptions[sub.id] = sub
        return sub.model_copy()

    async def update_subscription(self, subscription_id, req):
        sub = self._lookup(self.subscriptions, "subscription", subscription_id)
        for field_name in ("plan_id", "quantity", "metadata"):
            value = getattr(req, field_name)
            if value is not None:
                setattr(sub, field_name, value)
        return sub.model_copy()

    async def cancel_subscription(self, subscription_id, req):
        sub = self._lookup(self.subscriptions, "subscription", subscription_id)
        if req.cancel_at_period_end:
            sub.cancel_at_period_end = True
        else:
            sub.status = "canceled"
            sub.canceled_at = datetime.now(timezone.utc)
        return sub.model_copy()

    async def get_subscription(self, subscription_id):
        return self._lookup(self.subscriptions, "subscription", subscription_id).model_copy()

    async def list_subscriptions(self, customer_id):
        return [s.model_copy() for s in self.subscriptions.values() if s.customer_id == customer_id]

    async def create_plan(self, plan):
        stored = plan.model_copy(update={"id": plan.id or self._new_id("plan")})
        self.plans[stored.id] = stored
        return stored.model_copy()

    async def update_plan(self, plan_id, plan):
        self._lookup(self.plans, "plan", plan_id)
        stored = plan.model_copy(update={"id": plan_id})
        self.plans[plan_id] = stored
        return stored.model_copy()

    async def delete_plan(self, plan_id):
        self._lookup(self.plans, "plan", plan_id)
        del self.plans[plan_id]

    async def get_plan(self, plan_id):
        return self._lookup(self.plans, "plan", plan_id).model_copy()

    async def list_plans(self):
        return [p.model_copy() for p in self.plans.values()]

    # disputes

    async def create_dispute(self, req):
        dispute = Dispute(
            id=self._new_id("dp"),
            transaction_id=req.transaction_id,
            customer_id=req.customer_id,
            amount=req.amount,
            currency=req.currency,
            reason=req.reason,
            metadata=dict(req.metadata),
        )
        self.disputes[dispute.id] = dispute
        return dispute.model_copy()

    async def update_dispute(self, dispute_id, req):
        dispute = self._lookup(self.disputes, "dispute", dispute_id)
        if req.status is not None:
            dispute.status = req.status
        if req.metadata is not None:
            dispute.metadata = req.metadata
        return dispute.model_copy()

    async def submit_dispute_evidence(self, dispute_id, req):
        dispute = self._lookup(self.disputes, "dispute", dispute_id)
        evidence = Evidence(
            id=self._new_id("ev"), dispute_id=dispute_id, type=req.type, description=req.description, files=req.files
        )
        self.evidence.setdefault(dispute_id, []).append(evidence)
        dispute.status = "under_review"
        return evidence

    async def get_dispute(self, dispute_id):
        return self._lookup(self.disputes, "dispute", dispute_id).model_copy()

    async def list_disputes(self, customer_id):
        return [d.model_copy() for d in self.disputes.values() if d.customer_id == customer_id]

    async def get_dispute_stats(self):
        stats = DisputeStats(total=len(self.disputes))
        for dispute in self.disputes.values():
            if dispute.status in ("open", "under_review"):
                stats.open += 1
            elif dispute.status == "won":
                stats.won += 1
            elif dispute.status == "lost":
                stats.lost += 1
            elif dispute.status == "canceled":
                stats.canceled += 1
        return stats

    # customers

    async def create_customer(self, req):
        customer = Customer(id=self._new_id("cus"), **req.model_dump())
        self.customers[customer.id] = customer
        return customer.id

    async def update_customer(self, customer_id, req):
        customer = self._lookup(self.customers, "customer", customer_id)
        for field_name, value in req.model_dump(exclude_none=True).items():
            setattr(customer, field_name, value)

    async def get_customer(self, customer_id):
        return self._lookup(self.customers, "customer", customer_id).model_copy()

    async def delete_customer(self, customer_id):
        self._lookup(self.customers, "customer", customer_id)
        del self.customers[customer_id]

    # invoices

    async def create_invoice(self, req):
        await self._simulate("create_invoice", req.customer_id)
        invoice_id = self._new_id("inv")
        invoice = Invoice(
            id=invoice_id,
            customer_id=req.customer_id,
            amount=req.amount,
            currency=req.currency,
            description=req.description,
            invoice_url=f"https://sandbox.{self._name}.test/invoices/{invoice_id}",
            metadata=dict(req.metadata),
        )
        self.invoices[invoice_id] = invoice
        return invoice.model_copy()

    async def get_invoice(self, invoice_id):
        return self._lookup(self.invoices, "invoice", invoice_id).model_copy()

    async def list_invoices(self, req):
        rows = [
            i
            for i in self.invoices.values()
            if (req.customer_id is None or i.customer_id == req.customer_id)
            and (req.status is None or i.status == req.status)
        ]
        return [i.model_copy() for i in rows[: req.limit]]

    async def cancel_invoice(self, invoice_id):
        invoice = self._lookup(self.invoices, "invoice", invoice_id)
        invoice.status = "void"
        return invoice.model_copy()

    # payouts and balance

    async def create_payout(self, req):
        await self._simulate("create_payout")
        payout = Payout(
            id=self._new_id("po"),
            amount=req.amount,
            currency=req.currency,
            destination=req.destination,
            channel=req.channel,
            metadata=dict(req.metadata),
        )
        self.payouts[payout.id] = payout
        return payout.model_copy()

    async def get_payout(self, payout_id):
        return self._lookup(self.payouts, "payout", payout_id).model_copy()

    async def list_payouts(self, req):
        rows = [p for p in self.payouts.values() if req.status is None or p.status == req.status]
        return [p.model_copy() for p in rows[: req.limit]]

    async def cancel_payout(self, payout_id):
        payout = self._lookup(self.payouts, "payout", payout_id)
        if payout.status != "pending":
            raise InvalidRequestError(f"payout {payout_id} is {payout.status}")
        payout.status = "canceled"
        return payout.model_copy()

    async def get_payout_channels(self, currency):
        return [
            PayoutChannel(code=f"{self._name.upper()}_BANK", name="Bank transfer", currency=currency.upper()),
            PayoutChannel(code=f"{self._name.upper()}_WALLET", name="E-wallet", currency=currency.upper()),
        ]

    async def get_balance(self, currency):
        currency = currency.upper()
        settled = sum(
            c.captured_amount for c in self.charges.values() if c.currency == currency and c.status in (
                PaymentStatus.SUCCESS,
                PaymentStatus.REFUNDED,
            )
        )
        refunded = sum(r.amount for r in self.refunds.values() if r.currency == currency)
        paid_out = sum(p.amount for p in self.payouts.values() if p.currency == currency and p.status != "canceled")
        pending = sum(
            c.amount for c in self.charges.values()
            if c.currency == currency and c.status == PaymentStatus.REQUIRES_CAPTURE
        )
        return Balance(currency=currency, available=settled - refunded - paid_out, pending=pending)

    # payment sessions

    async def create_payment_session(self, req):
        await self._simulate("create_payment_session", req.customer_id)
        session_id = self._new_id("ps")
        session = PaymentSession(
            id=session_id,
            amount=req.amount,
            currency=req.currency,
            capture_method=req.capture_method,
            customer_id=req.customer_id,
            payment_method_id=req.payment_method_id,
            description=req.description,
            client_secret=f"{session_id}_secret",
            metadata=dict(req.metadata),
        )
        self.sessions[session_id] = session
        return session.model_copy()

    async def get_payment_session(self, session_id):
        return self._lookup(self.sessions, "payment session", session_id).model_copy()

    async def update_payment_session(self, session_id, req):
        session = self._lookup(self.sessions, "payment session", session_id)
        if session.status != PaymentStatus.PENDING:
            raise InvalidRequestError(f"payment session {session_id} is {session.status.value}")
        for field_name, value in req.model_dump(exclude_none=True).items():
            setattr(session, field_name, value)
        return session.model_copy()

    async def confirm_payment_session(self, session_id, req):
        await self._simulate("confirm_payment_session")
        session = self._lookup(self.sessions, "payment session", session_id)
        if session.status != PaymentStatus.PENDING:
            raise InvalidRequestError(f"payment session {session_id} is {session.status.value}")
        if req.payment_method_id:
            session.payment_method_id = req.payment_method_id
        if session.capture_method == CaptureMethod.MANUAL:
            session.status = PaymentStatus.REQUIRES_CAPTURE
        else:
            session.status = PaymentStatus.SUCCESS
            session.captured_amount = session.amount
        return session.model_copy()

    async def capture_payment_session(self, session_id, amount=None):
        await self._simulate("capture_payment_session")
        session = self._lookup(self.sessions, "payment session", session_id)
        if session.status != PaymentStatus.REQUIRES_CAPTURE:
            raise InvalidRequestError(f"payment session {session_id} is not awaiting capture")
        capture = session.amount if amount is None else amount
        if capture > session.amount:
            raise InvalidRequestError("capture amount exceeds authorized amount")
        session.status = PaymentStatus.SUCCESS
        session.captured_amount = capture
        return session.model_copy()

    async def cancel_payment_session(self, session_id):
        session = self._lookup(self.sessions, "payment session", session_id)
        if session.status not in (PaymentStatus.PENDING, PaymentStatus.REQUIRES_CAPTURE):
            raise InvalidRequestError(f"payment session {session_id} is {session.status.value}")
        session.status = PaymentStatus.CANCELED
        return session.model_copy()

    async def list_payment_sessions(self, req):
        rows = [
            s
            for s in self.sessions.values()
            if (req.customer_id is None or s.customer_id == req.customer_id)
            and (req.status is None or s.status == req.status)
        ]
        return [s.model_copy() for s in rows[: req.limit]]

    # payment methods

    async def create_payment_method(self, req):
        supported = self._capabilities.supported_payment_methods
        if supported and req.type not in supported:
            raise InvalidRequestError(f"payment method type {req.type.value} not supported by {self._name}")
        method = PaymentMethod(id=self._new_id("pm"), type=req.type, customer_id=req.customer_id, details=req.details)
        method.provider_name = self._name
        self.payment_methods[method.id] = method
        return method.model_copy()

    async def get_payment_method(self, payment_method_id):
        return self._lookup(self.payment_methods, "payment method", payment_method_id).model_copy()

    async def list_payment_methods(self, customer_id, method_type=None):
        return [
            m.model_copy()
            for m in self.payment_methods.values()
            if m.customer_id == customer_id and (method_type is None or m.type == method_type)
        ]

    async def attach_payment_method(self, payment_method_id, customer_id):
        self._lookup(self.payment_methods, "payment method", payment_method_id).customer_id = customer_id

    async def detach_payment_method(self, payment_method_id):
        self._lookup(self.payment_methods, "payment method", payment_method_id).customer_id = None

    async def expire_payment_method(self, payment_method_id):
        method = self._lookup(self.payment_methods, "payment method", payment_method_id)
        method.status = "expired"
        return method.model_copy()


def build_providers(names: list[str], failure_rate: float = 0.0) -> list[SandboxProvider]:
    """One sandbox provider per configured name, using its capability profile."""

    return [SandboxProvider(name, failure_rate=failure_rate) for name in names]
