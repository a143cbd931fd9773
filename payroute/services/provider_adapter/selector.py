"""Multi-provider selection, entity affinity and fan-out.

Chooses exactly one provider per operation (currency table, explicit
preference, or the provider that originated the entity), records which
provider created each entity, and aggregates list calls across providers.

The `(entity_type, entity_id) -> provider` dict is a cache over the durable
mapping store. A cache miss always falls back to the store, and a mapping that
names a provider outside the configured set fails instead of substituting
another provider: a refund must go to the provider holding the charge.
"""

import asyncio
import threading
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from payroute.common.alerts import AlertManager
from payroute.common.errors import (
    DuplicateMappingError,
    MappingNotFoundError,
    NoAvailableProviderError,
    NotFoundError,
    NotSupportedError,
    ProviderUnavailableError,
)
from payroute.common.logging import logger
from payroute.common.metrics import MetricsSink
from payroute.services.provider_adapter.base import (
    Capability,
    CapabilityRegistry,
    PaymentProvider,
    ProviderCapabilities,
)
from payroute.services.provider_adapter.models import EntityType, ProviderMapping
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
from payroute.services.provider_adapter.store import ProviderMappingStore

T = TypeVar("T")


class MultiProviderSelector:
    def __init__(
        self,
        providers: Iterable[PaymentProvider],
        mapping_store: ProviderMappingStore,
        currency_routes: dict[str, str] | None = None,
        default_provider: str | None = None,
        probe_timeout: float = 2.0,
        alerts: AlertManager | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.providers = list(providers)
        self._by_name: dict[str, PaymentProvider] = {}
        for provider in self.providers:
            name = provider.name()
            if name in self._by_name:
                raise ValueError(f"duplicate provider name: {name}")
            self._by_name[name] = provider
        self.mapping_store = mapping_store
        self.default_provider = default_provider
        self.probe_timeout = probe_timeout
        self.alerts = alerts or AlertManager()
        self.metrics = metrics or MetricsSink()
        self._lock = threading.Lock()
        self._currency_routes = {k.upper(): v for k, v in (currency_routes or {}).items()}
        self._entity_cache: dict[tuple[str, str], str] = {}
        self.registry = CapabilityRegistry()
        for provider in self.providers:
            self.registry.register_provider(provider)

    def name(self) -> str:
        return "multi_provider"

    def capabilities(self) -> ProviderCapabilities:
        caps = ProviderCapabilities()
        for provider in self.providers:
            caps = caps.merge(provider.capabilities())
        return caps

    async def is_available(self) -> bool:
        for provider in self.providers:
            if await self.probe(provider):
                return True
        return False

    # ------------------------------------------------------------------
    # selection

    async def probe(self, provider: PaymentProvider) -> bool:
        """Liveness probe bounded by `probe_timeout`, independent of the request deadline."""

        try:
            return bool(await asyncio.wait_for(provider.is_available(), self.probe_timeout))
        except asyncio.TimeoutError:
            logger.warning("provider_probe_timeout provider=%s timeout_s=%s", provider.name(), self.probe_timeout)
            return False
        except Exception as exc:
            logger.warning("provider_probe_failed provider=%s error=%s", provider.name(), exc)
            return False

    def provider_by_name(self, name: str) -> PaymentProvider:
        provider = self._by_name.get(name)
        if provider is None:
            raise ProviderUnavailableError(name)
        return provider

    def preferred_provider_for(self, currency: str) -> str | None:
        with self._lock:
            return self._currency_routes.get(currency.upper())

    async def select_available_provider(self, preferred: str | None = None) -> PaymentProvider:
        if preferred:
            provider = self._by_name.get(preferred)
            if provider is not None and await self.probe(provider):
                return provider
            logger.info("preferred_provider_unavailable provider=%s", preferred)
        for provider in self.providers:
            if await self.probe(provider):
                return provider
        raise NoAvailableProviderError()

    async def select_provider_by_currency(self, currency: str) -> PaymentProvider:
        return await self.select_available_provider(self.preferred_provider_for(currency))

    async def _available_providers(self, capability: Capability | None = None) -> list[PaymentProvider]:
        candidates = [
            p for p in self.providers if capability is None or self.registry.supports(p.name(), capability)
        ]
        flags = await asyncio.gather(*(self.probe(p) for p in candidates))
        return [p for p, ok in zip(candidates, flags) if ok]

    async def _select_capable(self, preferred: str | None, capability: Capability):
        provider = await self.select_available_provider(preferred)
        return provider, self.registry.require(provider.name(), capability)

    # ------------------------------------------------------------------
    # entity affinity

    async def resolve(
        self, entity_type: EntityType, entity_id: str, fallback_provider: str | None = None
    ) -> PaymentProvider:
        """Provider that owns an existing entity: cache, then the durable store.

        `fallback_provider` is used only when no durable mapping exists, and
        only if it names a configured provider.
        """

        key = (entity_type.value, entity_id)
        with self._lock:
            name = self._entity_cache.get(key)
        if name is None:
            try:
                name = self.mapping_store.get_by_entity(entity_id, entity_type.value).provider_name
            except MappingNotFoundError:
                if fallback_provider is None:
                    raise
                logger.warning(
                    "provider_mapping_missing entity_type=%s entity_id=%s fallback=%s",
                    entity_type.value,
                    entity_id,
                    fallback_provider,
                )
                name = fallback_provider
            provider = self.provider_by_name(name)
            with self._lock:
                self._entity_cache[key] = name
            return provider
        return self.provider_by_name(name)

    def remember(
        self,
        entity_type: EntityType,
        entity_id: str,
        provider: PaymentProvider,
        provider_entity_id: str | None = None,
    ) -> None:
        """Cache and durably record who created an entity.

        Best effort relative to the provider call, which already succeeded: a
        failed write is logged, counted and alerted, never raised.
        """

        if not entity_id:
            return
        name = provider.name()
        with self._lock:
            self._entity_cache[(entity_type.value, entity_id)] = name
        mapping = ProviderMapping(
            entity_id=entity_id,
            entity_type=entity_type.value,
            provider_name=name,
            provider_entity_id=provider_entity_id or entity_id,
        )
        try:
            self.mapping_store.create(mapping)
        except DuplicateMappingError:
            logger.info("provider_mapping_exists entity_type=%s entity_id=%s", entity_type.value, entity_id)
        except Exception as exc:
            logger.error(
                "provider_mapping_write_failed entity_type=%s entity_id=%s provider=%s error=%s",
                entity_type.value,
                entity_id,
                name,
                exc,
            )
            self.metrics.mapping_failure(entity_type.value)
            self.alerts.warning(
                "Provider mapping write failed",
                f"{entity_type.value} {entity_id} created at {name} has no durable mapping: {exc}",
                source="provider_selector",
                entity_type=entity_type.value,
                entity_id=entity_id,
                provider=name,
            )

    def clear_cache(self) -> None:
        with self._lock:
            self._entity_cache.clear()

    async def _locate(
        self,
        entity_type: EntityType,
        entity_id: str,
        capability: Capability,
        call: Callable[[Any], Awaitable[T]],
    ) -> T:
        """Read an entity by id; on a missing mapping ask every capable provider."""

        try:
            provider = await self.resolve(entity_type, entity_id)
        except MappingNotFoundError:
            for candidate in await self._available_providers(capability):
                try:
                    result = await call(self.registry.require(candidate.name(), capability))
                except Exception as exc:
                    logger.info("locate_miss provider=%s entity_id=%s error=%s", candidate.name(), entity_id, exc)
                    continue
                self.remember(entity_type, entity_id, candidate)
                return result
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}") from None
        return await call(self.registry.require(provider.name(), capability))

    async def _fan_out(
        self,
        label: str,
        call: Callable[[Any], Awaitable[list[T]]],
        capability: Capability | None = None,
    ) -> list[T]:
        """Concatenate a list call across available providers, skipping failures."""

        results: list[T] = []
        for provider in await self._available_providers(capability):
            impl = provider if capability is None else self.registry.require(provider.name(), capability)
            try:
                items = await call(impl)
            except Exception as exc:
                logger.warning("fan_out_provider_failed op=%s provider=%s error=%s", label, provider.name(), exc)
                continue
            for item in items:
                item.provider_name = provider.name()
            results.extend(items)
        if not results:
            raise NotFoundError(f"no {label} found")
        return results

    async def _scan(self, label: str, capability: Capability, call: Callable[[Any], Awaitable[T]]) -> T:
        """First successful result from any capable, available provider."""

        providers = await self._available_providers(capability)
        if not providers:
            raise NotSupportedError(self.name(), capability.value)
        for provider in providers:
            try:
                return await call(self.registry.require(provider.name(), capability))
            except Exception as exc:
                logger.info("scan_miss op=%s provider=%s error=%s", label, provider.name(), exc)
        raise NotFoundError(f"{label} failed on every provider")

    # ------------------------------------------------------------------
    # charges and refunds

    async def charge(self, req: ChargeRequest, provider: PaymentProvider | None = None) -> ChargeResponse:
        provider = provider or await self.select_provider_by_currency(req.currency)
        resp = await provider.charge(req)
        resp.provider_name = provider.name()
        if resp.id:
            self.remember(EntityType.PAYMENT, resp.id, provider, resp.provider_charge_id or resp.id)
        return resp

    async def refund(self, req: RefundRequest, fallback_provider: str | None = None) -> RefundResponse:
        provider = await self.resolve(EntityType.PAYMENT, req.payment_id, fallback_provider)
        resp = await provider.refund(req)
        resp.provider_name = provider.name()
        return resp

    async def capture_payment(self, payment_id: str, amount: int) -> None:
        provider = await self.resolve(EntityType.PAYMENT, payment_id)
        await self.registry.require(provider.name(), Capability.CAPTURE).capture_payment(payment_id, amount)

    async def void_payment(self, payment_id: str) -> None:
        provider = await self.resolve(EntityType.PAYMENT, payment_id)
        await self.registry.require(provider.name(), Capability.VOID).void_payment(payment_id)

    async def create_3ds_session(self, payment_id: str, return_url: str) -> ThreeDSecureSession:
        provider = await self.resolve(EntityType.PAYMENT, payment_id)
        impl = self.registry.require(provider.name(), Capability.THREE_DS)
        return await impl.create_3ds_session(payment_id, return_url)

    async def confirm_3ds_payment(self, payment_id: str) -> ChargeResponse:
        provider = await self.resolve(EntityType.PAYMENT, payment_id)
        resp = await self.registry.require(provider.name(), Capability.THREE_DS).confirm_3ds_payment(payment_id)
        resp.provider_name = provider.name()
        return resp

    # ------------------------------------------------------------------
    # subscriptions and plans

    async def create_subscription(self, req: CreateSubscriptionRequest) -> Subscription:
        provider = await self.select_available_provider(self.default_provider)
        sub = await provider.create_subscription(req)
        sub.provider_name = provider.name()
        self.remember(EntityType.SUBSCRIPTION, sub.id, provider)
        return sub

    async def update_subscription(self, subscription_id: str, req: UpdateSubscriptionRequest) -> Subscription:
        provider = await self.resolve(EntityType.SUBSCRIPTION, subscription_id)
        return await provider.update_subscription(subscription_id, req)

    async def cancel_subscription(self, subscription_id: str, req: CancelSubscriptionRequest) -> Subscription:
        provider = await self.resolve(EntityType.SUBSCRIPTION, subscription_id)
        return await provider.cancel_subscription(subscription_id, req)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        provider = await self.resolve(EntityType.SUBSCRIPTION, subscription_id)
        return await provider.get_subscription(subscription_id)

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        return await self._fan_out("subscriptions", lambda p: p.list_subscriptions(customer_id))

    async def create_plan(self, plan: Plan) -> Plan:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.create_plan(plan)

    async def update_plan(self, plan_id: str, plan: Plan) -> Plan:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.update_plan(plan_id, plan)

    async def delete_plan(self, plan_id: str) -> None:
        provider = await self.select_available_provider(self.default_provider)
        await provider.delete_plan(plan_id)

    async def get_plan(self, plan_id: str) -> Plan:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.get_plan(plan_id)

    async def list_plans(self) -> list[Plan]:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.list_plans()

    # ------------------------------------------------------------------
    # disputes

    async def create_dispute(self, req: CreateDisputeRequest) -> Dispute:
        provider = await self.select_available_provider(self.default_provider)
        dispute = await provider.create_dispute(req)
        dispute.provider_name = provider.name()
        self.remember(EntityType.DISPUTE, dispute.id, provider)
        return dispute

    async def update_dispute(self, dispute_id: str, req: UpdateDisputeRequest) -> Dispute:
        provider = await self.resolve(EntityType.DISPUTE, dispute_id)
        return await provider.update_dispute(dispute_id, req)

    async def submit_dispute_evidence(self, dispute_id: str, req: SubmitEvidenceRequest) -> Evidence:
        provider = await self.resolve(EntityType.DISPUTE, dispute_id)
        return await provider.submit_dispute_evidence(dispute_id, req)

    async def get_dispute(self, dispute_id: str) -> Dispute:
        provider = await self.resolve(EntityType.DISPUTE, dispute_id)
        return await provider.get_dispute(dispute_id)

    async def list_disputes(self, customer_id: str) -> list[Dispute]:
        return await self._fan_out("disputes", lambda p: p.list_disputes(customer_id))

    async def get_dispute_stats(self) -> DisputeStats:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.get_dispute_stats()

    # ------------------------------------------------------------------
    # customers

    async def create_customer(self, req: CreateCustomerRequest) -> str:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.create_customer(req)

    async def update_customer(self, customer_id: str, req: UpdateCustomerRequest) -> None:
        provider = await self.select_available_provider(self.default_provider)
        await provider.update_customer(customer_id, req)

    async def get_customer(self, customer_id: str) -> Customer:
        provider = await self.select_available_provider(self.default_provider)
        return await provider.get_customer(customer_id)

    async def delete_customer(self, customer_id: str) -> None:
        provider = await self.select_available_provider(self.default_provider)
        await provider.delete_customer(customer_id)

    # ------------------------------------------------------------------
    # payment methods

    async def create_payment_method(self, req: CreatePaymentMethodRequest) -> PaymentMethod:
        _, impl = await self._select_capable(req.provider or self.default_provider, Capability.PAYMENT_METHODS)
        return await impl.create_payment_method(req)

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        return await self._scan(
            "get_payment_method", Capability.PAYMENT_METHODS, lambda p: p.get_payment_method(payment_method_id)
        )

    async def list_payment_methods(
        self, customer_id: str, method_type: PaymentMethodType | None = None
    ) -> list[PaymentMethod]:
        return await self._fan_out(
            "payment methods",
            lambda p: p.list_payment_methods(customer_id, method_type),
            Capability.PAYMENT_METHODS,
        )

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        await self._scan(
            "attach_payment_method",
            Capability.PAYMENT_METHODS,
            lambda p: p.attach_payment_method(payment_method_id, customer_id),
        )

    async def detach_payment_method(self, payment_method_id: str) -> None:
        await self._scan(
            "detach_payment_method", Capability.PAYMENT_METHODS, lambda p: p.detach_payment_method(payment_method_id)
        )

    async def expire_payment_method(self, payment_method_id: str) -> PaymentMethod:
        return await self._scan(
            "expire_payment_method", Capability.PAYMENT_METHODS, lambda p: p.expire_payment_method(payment_method_id)
        )

    # ------------------------------------------------------------------
    # invoices

    async def create_invoice(self, req: CreateInvoiceRequest) -> Invoice:
        provider, impl = await self._select_capable(self.preferred_provider_for(req.currency), Capability.INVOICES)
        invoice = await impl.create_invoice(req)
        invoice.provider_name = provider.name()
        self.remember(EntityType.INVOICE, invoice.id, provider)
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self._locate(EntityType.INVOICE, invoice_id, Capability.INVOICES, lambda p: p.get_invoice(invoice_id))

    async def cancel_invoice(self, invoice_id: str) -> Invoice:
        provider = await self.resolve(EntityType.INVOICE, invoice_id)
        return await self.registry.require(provider.name(), Capability.INVOICES).cancel_invoice(invoice_id)

    async def list_invoices(self, req: ListInvoicesRequest) -> list[Invoice]:
        return await self._fan_out("invoices", lambda p: p.list_invoices(req), Capability.INVOICES)

    # ------------------------------------------------------------------
    # payouts and balances

    async def create_payout(self, req: CreatePayoutRequest) -> Payout:
        provider, impl = await self._select_capable(self.preferred_provider_for(req.currency), Capability.PAYOUTS)
        payout = await impl.create_payout(req)
        payout.provider_name = provider.name()
        self.remember(EntityType.PAYOUT, payout.id, provider)
        return payout

    async def get_payout(self, payout_id: str) -> Payout:
        return await self._locate(EntityType.PAYOUT, payout_id, Capability.PAYOUTS, lambda p: p.get_payout(payout_id))

    async def cancel_payout(self, payout_id: str) -> Payout:
        provider = await self.resolve(EntityType.PAYOUT, payout_id)
        return await self.registry.require(provider.name(), Capability.PAYOUTS).cancel_payout(payout_id)

    async def list_payouts(self, req: ListPayoutsRequest) -> list[Payout]:
        return await self._fan_out("payouts", lambda p: p.list_payouts(req), Capability.PAYOUTS)

    async def get_payout_channels(self, currency: str) -> list[PayoutChannel]:
        _, impl = await self._select_capable(self.preferred_provider_for(currency), Capability.PAYOUTS)
        return await impl.get_payout_channels(currency)

    async def get_balance(self, currency: str) -> Balance:
        provider, impl = await self._select_capable(self.preferred_provider_for(currency), Capability.BALANCE)
        balance = await impl.get_balance(currency)
        balance.provider_name = provider.name()
        return balance

    # ------------------------------------------------------------------
    # payment sessions

    async def create_payment_session(self, req: CreatePaymentSessionRequest) -> PaymentSession:
        provider, impl = await self._select_capable(
            self.preferred_provider_for(req.currency), Capability.PAYMENT_SESSIONS
        )
        session = await impl.create_payment_session(req)
        session.provider_name = provider.name()
        self.remember(EntityType.PAYMENT_SESSION, session.id, provider)
        return session

    async def _session_impl(self, session_id: str):
        provider = await self.resolve(EntityType.PAYMENT_SESSION, session_id)
        return self.registry.require(provider.name(), Capability.PAYMENT_SESSIONS)

    async def get_payment_session(self, session_id: str) -> PaymentSession:
        return await self._locate(
            EntityType.PAYMENT_SESSION,
            session_id,
            Capability.PAYMENT_SESSIONS,
            lambda p: p.get_payment_session(session_id),
        )

    async def update_payment_session(self, session_id: str, req: UpdatePaymentSessionRequest) -> PaymentSession:
        return await (await self._session_impl(session_id)).update_payment_session(session_id, req)

    async def confirm_payment_session(self, session_id: str, req: ConfirmPaymentSessionRequest) -> PaymentSession:
        return await (await self._session_impl(session_id)).confirm_payment_session(session_id, req)

    async def capture_payment_session(self, session_id: str, amount: int | None = None) -> PaymentSession:
        return await (await self._session_impl(session_id)).capture_payment_session(session_id, amount)

    async def cancel_payment_session(self, session_id: str) -> PaymentSession:
        return await (await self._session_impl(session_id)).cancel_payment_session(session_id)

    async def list_payment_sessions(self, req: ListPaymentSessionsRequest) -> list[PaymentSession]:
        return await self._fan_out(
            "payment sessions", lambda p: p.list_payment_sessions(req), Capability.PAYMENT_SESSIONS
        )

    # ------------------------------------------------------------------

    async def get_provider_stats(self) -> dict[str, Any]:
        with self._lock:
            cached: dict[str, int] = {}
            for entity_type, _ in self._entity_cache:
                cached[entity_type] = cached.get(entity_type, 0) + 1
            routes = dict(self._currency_routes)
        availability = await asyncio.gather(*(self.probe(p) for p in self.providers))
        return {
            "total_providers": len(self.providers),
            "cached_mappings": cached,
            "currency_routes": routes,
            "provider_availability": {p.name(): ok for p, ok in zip(self.providers, availability)},
            "capabilities": {
                p.name(): [c.value for c in self.registry.capabilities_of(p.name())] for p in self.providers
            },
        }
