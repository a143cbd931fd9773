"""Provider operation contract, capability model and capability registry.

Every provider implements `PaymentProvider`. Optional feature groups are
separate interfaces; which of them a provider offers is resolved once into a
`CapabilityRegistry` so routing code never type-checks providers ad hoc.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from payroute.common.errors import NotSupportedError
from payroute.services.provider_adapter.schemas import (
    Balance,
    CancelSubscriptionRequest,
    ChargeRequest,
    ChargeResponse,
    ConfirmPaymentSessionRequest,
    CreateCustomerRequest,
    CreateDisputeRequest,
    CreateInvoiceRequest,
    CreatePaymentMethodRequest,
    CreatePaymentSessionRequest,
    CreatePayoutRequest,
    CreateSubscriptionRequest,
    Customer,
    Dispute,
    DisputeStats,
    Evidence,
    Invoice,
    ListInvoicesRequest,
    ListPaymentSessionsRequest,
    ListPayoutsRequest,
    PaymentMethod,
    PaymentMethodType,
    PaymentSession,
    Payout,
    PayoutChannel,
    Plan,
    RefundRequest,
    RefundResponse,
    SubmitEvidenceRequest,
    Subscription,
    ThreeDSecureSession,
    UpdateCustomerRequest,
    UpdateDisputeRequest,
    UpdatePaymentSessionRequest,
    UpdateSubscriptionRequest,
)


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_invoices: bool = False
    supports_payouts: bool = False
    supports_payment_sessions: bool = False
    supports_3ds: bool = False
    supports_manual_capture: bool = False
    supports_balance: bool = False
    supported_currencies: frozenset[str] = field(default_factory=frozenset)
    supported_payment_methods: frozenset[PaymentMethodType] = field(default_factory=frozenset)

    def merge(self, other: "ProviderCapabilities") -> "ProviderCapabilities":
        """Union of two feature sets: "can either provider do X"."""

        return ProviderCapabilities(
            supports_invoices=self.supports_invoices or other.supports_invoices,
            supports_payouts=self.supports_payouts or other.supports_payouts,
            supports_payment_sessions=self.supports_payment_sessions or other.supports_payment_sessions,
            supports_3ds=self.supports_3ds or other.supports_3ds,
            supports_manual_capture=self.supports_manual_capture or other.supports_manual_capture,
            supports_balance=self.supports_balance or other.supports_balance,
            supported_currencies=self.supported_currencies | other.supported_currencies,
            supported_payment_methods=self.supported_payment_methods | other.supported_payment_methods,
        )


class PaymentProvider(ABC):
    """Uniform operation contract every concrete provider implements."""

    @abstractmethod
    def name(self) -> str:
        """Canonical provider name, e.g. "stripe"."""

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities: ...

    @abstractmethod
    async def charge(self, req: ChargeRequest) -> ChargeResponse: ...

    @abstractmethod
    async def refund(self, req: RefundRequest) -> RefundResponse: ...

    @abstractmethod
    async def create_subscription(self, req: CreateSubscriptionRequest) -> Subscription: ...

    @abstractmethod
    async def update_subscription(self, subscription_id: str, req: UpdateSubscriptionRequest) -> Subscription: ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, req: CancelSubscriptionRequest) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription: ...

    @abstractmethod
    async def list_subscriptions(self, customer_id: str) -> list[Subscription]: ...

    @abstractmethod
    async def create_plan(self, plan: Plan) -> Plan: ...

    @abstractmethod
    async def update_plan(self, plan_id: str, plan: Plan) -> Plan: ...

    @abstractmethod
    async def delete_plan(self, plan_id: str) -> None: ...

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Plan: ...

    @abstractmethod
    async def list_plans(self) -> list[Plan]: ...

    @abstractmethod
    async def create_dispute(self, req: CreateDisputeRequest) -> Dispute: ...

    @abstractmethod
    async def update_dispute(self, dispute_id: str, req: UpdateDisputeRequest) -> Dispute: ...

    @abstractmethod
    async def submit_dispute_evidence(self, dispute_id: str, req: SubmitEvidenceRequest) -> Evidence: ...

    @abstractmethod
    async def get_dispute(self, dispute_id: str) -> Dispute: ...

    @abstractmethod
    async def list_disputes(self, customer_id: str) -> list[Dispute]: ...

    @abstractmethod
    async def get_dispute_stats(self) -> DisputeStats: ...

    @abstractmethod
    async def create_customer(self, req: CreateCustomerRequest) -> str: ...

    @abstractmethod
    async def update_customer(self, customer_id: str, req: UpdateCustomerRequest) -> None: ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer: ...

    @abstractmethod
    async def delete_customer(self, customer_id: str) -> None: ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap liveness probe; the selector bounds it with its own timeout."""


class InvoiceProvider(ABC):
    @abstractmethod
    async def create_invoice(self, req: CreateInvoiceRequest) -> Invoice: ...

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice: ...

    @abstractmethod
    async def list_invoices(self, req: ListInvoicesRequest) -> list[Invoice]: ...

    @abstractmethod
    async def cancel_invoice(self, invoice_id: str) -> Invoice: ...


class PayoutProvider(ABC):
    @abstractmethod
    async def create_payout(self, req: CreatePayoutRequest) -> Payout: ...

    @abstractmethod
    async def get_payout(self, payout_id: str) -> Payout: ...

    @abstractmethod
    async def list_payouts(self, req: ListPayoutsRequest) -> list[Payout]: ...

    @abstractmethod
    async def cancel_payout(self, payout_id: str) -> Payout: ...

    @abstractmethod
    async def get_payout_channels(self, currency: str) -> list[PayoutChannel]: ...


class PaymentSessionProvider(ABC):
    @abstractmethod
    async def create_payment_session(self, req: CreatePaymentSessionRequest) -> PaymentSession: ...

    @abstractmethod
    async def get_payment_session(self, session_id: str) -> PaymentSession: ...

    @abstractmethod
    async def update_payment_session(self, session_id: str, req: UpdatePaymentSessionRequest) -> PaymentSession: ...

    @abstractmethod
    async def confirm_payment_session(self, session_id: str, req: ConfirmPaymentSessionRequest) -> PaymentSession: ...

    @abstractmethod
    async def capture_payment_session(self, session_id: str, amount: int | None = None) -> PaymentSession: ...

    @abstractmethod
    async def cancel_payment_session(self, session_id: str) -> PaymentSession: ...

    @abstractmethod
    async def list_payment_sessions(self, req: ListPaymentSessionsRequest) -> list[PaymentSession]: ...


class PaymentMethodProvider(ABC):
    @abstractmethod
    async def create_payment_method(self, req: CreatePaymentMethodRequest) -> PaymentMethod: ...

    @abstractmethod
    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod: ...

    @abstractmethod
    async def list_payment_methods(
        self, customer_id: str, method_type: PaymentMethodType | None = None
    ) -> list[PaymentMethod]: ...

    @abstractmethod
    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None: ...

    @abstractmethod
    async def detach_payment_method(self, payment_method_id: str) -> None: ...

    @abstractmethod
    async def expire_payment_method(self, payment_method_id: str) -> PaymentMethod: ...


class BalanceProvider(ABC):
    @abstractmethod
    async def get_balance(self, currency: str) -> Balance: ...


class CaptureProvider(ABC):
    @abstractmethod
    async def capture_payment(self, payment_id: str, amount: int) -> None: ...


class VoidProvider(ABC):
    @abstractmethod
    async def void_payment(self, payment_id: str) -> None: ...


class ThreeDSecureProvider(ABC):
    @abstractmethod
    async def create_3ds_session(self, payment_id: str, return_url: str) -> ThreeDSecureSession: ...

    @abstractmethod
    async def confirm_3ds_payment(self, payment_id: str) -> ChargeResponse: ...


class Capability(str, Enum):
    INVOICES = "invoices"
    PAYOUTS = "payouts"
    PAYMENT_SESSIONS = "payment_sessions"
    PAYMENT_METHODS = "payment_methods"
    BALANCE = "balance"
    CAPTURE = "capture"
    VOID = "void"
    THREE_DS = "3ds"


# Interface each capability requires, and the flag that must be set (None: no flag).
_CAPABILITY_SPECS: dict[Capability, tuple[type, str | None]] = {
    Capability.INVOICES: (InvoiceProvider, "supports_invoices"),
    Capability.PAYOUTS: (PayoutProvider, "supports_payouts"),
    Capability.PAYMENT_SESSIONS: (PaymentSessionProvider, "supports_payment_sessions"),
    Capability.PAYMENT_METHODS: (PaymentMethodProvider, None),
    Capability.BALANCE: (BalanceProvider, "supports_balance"),
    Capability.CAPTURE: (CaptureProvider, "supports_manual_capture"),
    Capability.VOID: (VoidProvider, "supports_manual_capture"),
    Capability.THREE_DS: (ThreeDSecureProvider, "supports_3ds"),
}


class CapabilityRegistry:
    """Provider name -> capability -> implementation, built once."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[Capability, object]] = {}

    def register_provider(self, provider: PaymentProvider) -> None:
        caps = provider.capabilities()
        entries: dict[Capability, object] = {}
        for capability, (interface, flag) in _CAPABILITY_SPECS.items():
            if not isinstance(provider, interface):
                continue
            if flag is not None and not getattr(caps, flag):
                continue
            entries[capability] = provider
        self._entries[provider.name()] = entries

    def supports(self, provider_name: str, capability: Capability) -> bool:
        return capability in self._entries.get(provider_name, {})

    def get(self, provider_name: str, capability: Capability):
        return self._entries.get(provider_name, {}).get(capability)

    def require(self, provider_name: str, capability: Capability):
        impl = self.get(provider_name, capability)
        if impl is None:
            raise NotSupportedError(provider_name, capability.value)
        return impl

    def capabilities_of(self, provider_name: str) -> list[Capability]:
        return sorted(self._entries.get(provider_name, {}), key=lambda c: c.value)
