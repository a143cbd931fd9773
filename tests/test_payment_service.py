"""Charge/refund orchestration: idempotency, transactions and compensation."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from payroute.common.errors import (
    CircuitOpenError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    ProviderDeclinedError,
    ProviderError,
)
from payroute.common.circuit_breaker import CircuitBreakerConfig
from payroute.services.orchestrator.models import Payment
from payroute.services.orchestrator.repository import PaymentRepository
from payroute.services.orchestrator.service import COMPENSATION_REASON, PaymentService
from payroute.services.provider_adapter.executor import ProviderExecutor
from payroute.services.provider_adapter.models import EntityType
from payroute.services.provider_adapter.schemas import CaptureMethod, ChargeRequest, RefundRequest


def charge_request(**overrides):
    data = {
        "customer_id": "cus_1",
        "amount": 2500,
        "currency": "USD",
        "payment_method": "pm_card_visa",
        "idempotency_key": "order-1001",
    }
    data.update(overrides)
    return ChargeRequest(**data)


class FailingCreateRepository(PaymentRepository):
    def create(self, db, payment):
        raise OperationalError("INSERT INTO payments", {}, Exception("disk I/O error"))


class FailingRefundRepository(PaymentRepository):
    def create_refund(self, db, refund):
        raise OperationalError("INSERT INTO refunds", {}, Exception("disk I/O error"))


def count_payments(session_factory) -> int:
    with session_factory() as db:
        return db.query(Payment).count()


@pytest.mark.asyncio
async def test_charge_then_partial_refund(service, providers, mapping_store, metrics):
    payment = await service.create_charge(charge_request())

    assert payment.status == "succeeded"
    assert payment.provider_name == "stripe"
    assert payment.amount == 2500
    assert mapping_store.get_by_entity(payment.provider_charge_id, EntityType.PAYMENT.value).provider_name == "stripe"

    refund = await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000, reason="requested"))

    assert refund.amount == 1000
    assert refund.provider_name == "stripe"
    assert service.get_payment(payment.payment_id).status == "refunded"
    assert service.get_refund(refund.refund_id).payment_id == payment.payment_id
    assert providers["stripe"].calls == ["charge", "refund"]
    assert ("payment", "stripe", "USD", "succeeded") in metrics.events
    assert ("refund", "stripe", "succeeded") in metrics.events


@pytest.mark.asyncio
async def test_charge_writes_timeline(service, repository):
    payment = await service.create_charge(charge_request())
    await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=2500))

    states = {entry.to_state for entry in repository.list_timeline(payment.payment_id)}

    assert states == {"succeeded", "refund_pending", "refunded"}


@pytest.mark.asyncio
async def test_idempotent_replay_returns_stored_payment(service, providers):
    first = await service.create_charge(charge_request())
    second = await service.create_charge(charge_request(amount=9999))

    assert second.payment_id == first.payment_id
    assert second.amount == 2500
    assert providers["stripe"].calls.count("charge") == 1


@pytest.mark.asyncio
async def test_charges_without_key_are_independent(service, providers):
    first = await service.create_charge(charge_request(idempotency_key=None))
    second = await service.create_charge(charge_request(idempotency_key=None))

    assert first.payment_id != second.payment_id
    assert first.idempotency_key != second.idempotency_key
    assert providers["stripe"].calls.count("charge") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"amount": 0}, {"amount": -5}, {"currency": ""}, {"payment_method": ""}, {"customer_id": ""}],
)
async def test_charge_validation_happens_before_provider(service, providers, overrides):
    with pytest.raises(InvalidRequestError):
        await service.create_charge(charge_request(**overrides))

    assert providers["stripe"].calls == []


@pytest.mark.asyncio
async def test_transient_provider_failures_are_retried(service, providers, metrics):
    providers["stripe"].fail_next(2)

    payment = await service.create_charge(charge_request())

    assert payment.status == "succeeded"
    assert providers["stripe"].calls.count("charge") == 3
    assert len(metrics.named("retry")) == 2


@pytest.mark.asyncio
async def test_decline_is_not_retried_and_nothing_persisted(service, providers, session_factory):
    with pytest.raises(ProviderDeclinedError):
        await service.create_charge(charge_request(customer_id="decline_cus"))

    assert providers["stripe"].calls == ["charge"]
    assert count_payments(session_factory) == 0


@pytest.mark.asyncio
async def test_exhausted_retries_raise_provider_error(service, providers, session_factory):
    with pytest.raises(ProviderError) as excinfo:
        await service.create_charge(charge_request(customer_id="timeout_cus"))

    assert excinfo.value.operation == "charge"
    assert providers["stripe"].calls.count("charge") == 3
    assert count_payments(session_factory) == 0


@pytest.mark.asyncio
async def test_open_circuit_rejects_charge_without_provider_call(
    repository, selector, providers, alerts, metrics, fast_policy
):
    executor = ProviderExecutor(CircuitBreakerConfig(max_failures=1), metrics=metrics, default_policy=fast_policy)
    service = PaymentService(repository, selector, executor, alerts=alerts, metrics=metrics, charge_policy=fast_policy)

    with pytest.raises(CircuitOpenError):
        await service.create_charge(charge_request(customer_id="timeout_cus", idempotency_key="order-a"))
    with pytest.raises(CircuitOpenError):
        await service.create_charge(charge_request(idempotency_key="order-b"))

    assert providers["stripe"].calls.count("charge") == 1


@pytest.mark.asyncio
async def test_refund_exceeding_amount_rejected_without_provider_call(service, providers):
    payment = await service.create_charge(charge_request())

    with pytest.raises(InvalidRequestError):
        await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=2501))

    assert "refund" not in providers["stripe"].calls
    assert service.get_payment(payment.payment_id).status == "succeeded"


@pytest.mark.asyncio
async def test_refund_of_uncaptured_payment_rejected(service, providers):
    payment = await service.create_charge(charge_request(capture_method=CaptureMethod.MANUAL))
    assert payment.status == "requires_capture"

    with pytest.raises(InvalidRequestError):
        await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=100))
    assert "refund" not in providers["stripe"].calls


@pytest.mark.asyncio
async def test_second_refund_rejected(service):
    payment = await service.create_charge(charge_request())
    await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=500))

    with pytest.raises(InvalidRequestError):
        await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=500))


@pytest.mark.asyncio
async def test_refund_unknown_payment(service):
    with pytest.raises(NotFoundError):
        await service.create_refund(RefundRequest(payment_id="missing", amount=100))


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{"amount": 0}, {"payment_id": ""}])
async def test_refund_validation(service, overrides):
    req = {"payment_id": "p1", "amount": 100}
    req.update(overrides)

    with pytest.raises(InvalidRequestError):
        await service.create_refund(RefundRequest(**req))


@pytest.mark.asyncio
async def test_refund_uses_recorded_provider_when_mapping_lost(service, selector, mapping_store, providers):
    payment = await service.create_charge(charge_request(currency="IDR", amount=150000))
    mapping_store.delete(payment.provider_charge_id, EntityType.PAYMENT.value)
    selector.clear_cache()

    refund = await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=50000))

    assert refund.provider_name == "xendit"
    assert "refund" in providers["xendit"].calls


@pytest.mark.asyncio
async def test_persistence_failure_triggers_single_compensating_refund(
    session_factory, selector, executor, providers, alerts, metrics, fast_policy
):
    service = PaymentService(
        FailingCreateRepository(session_factory), selector, executor, alerts=alerts, metrics=metrics,
        charge_policy=fast_policy,
    )

    with pytest.raises(PersistenceError):
        await service.create_charge(charge_request())
    await service.wait_for_compensations()

    stripe = providers["stripe"]
    assert stripe.calls == ["charge", "refund"]
    [refund] = stripe.refunds.values()
    assert refund.reason == COMPENSATION_REASON
    assert refund.amount == 2500
    assert metrics.named("compensation") == [("compensation", "succeeded")]
    assert count_payments(session_factory) == 0


@pytest.mark.asyncio
async def test_failed_compensation_raises_critical_alert(
    session_factory, selector, executor, providers, alerts, alert_channel, metrics, fast_policy, mocker
):
    service = PaymentService(
        FailingCreateRepository(session_factory), selector, executor, alerts=alerts, metrics=metrics,
        charge_policy=fast_policy,
    )
    mocker.patch.object(providers["stripe"], "refund", side_effect=ConnectionError("stripe unreachable"))

    with pytest.raises(PersistenceError):
        await service.create_charge(charge_request())
    await service.wait_for_compensations()

    [alert] = alert_channel.sent
    assert alert.level.value == "critical"
    assert alert.title == "Payment Cleanup Failed"
    assert metrics.named("compensation") == [("compensation", "failed")]


@pytest.mark.asyncio
async def test_refund_persistence_failure_alerts(
    session_factory, selector, executor, providers, alerts, alert_channel, metrics, fast_policy
):
    seed = PaymentService(PaymentRepository(session_factory), selector, executor, alerts=alerts, metrics=metrics)
    payment = await seed.create_charge(charge_request())
    service = PaymentService(
        FailingRefundRepository(session_factory), selector, executor, alerts=alerts, metrics=metrics,
        refund_policy=fast_policy,
    )

    with pytest.raises(PersistenceError):
        await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000))

    assert [a.level.value for a in alert_channel.sent] == ["critical"]
    # Money moved, so the payment stays claimed and cannot be refunded again.
    assert service.get_payment(payment.payment_id).status == "refund_pending"
    assert len(providers["stripe"].refunds) == 1


@pytest.mark.asyncio
async def test_lookup_by_provider_charge_id_and_refund_listing(service, repository):
    payment = await service.create_charge(charge_request())

    assert repository.get_by_provider_charge_id(payment.provider_charge_id).payment_id == payment.payment_id
    assert repository.get_by_provider_charge_id("str_ch_unknown") is None

    refund = await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=700))

    assert [r.refund_id for r in service.list_refunds(payment.payment_id)] == [refund.refund_id]
    with pytest.raises(NotFoundError):
        service.list_refunds("missing")


@pytest.mark.asyncio
async def test_timed_out_charge_is_not_retried_and_late_success_is_refunded(
    repository, selector, providers, alerts, alert_channel, metrics, fast_policy, session_factory
):
    stripe = providers["stripe"]
    stripe.latency_seconds = 0.2
    executor = ProviderExecutor(call_timeout=0.05, metrics=metrics, default_policy=fast_policy)
    service = PaymentService(
        repository, selector, executor, alerts=alerts, metrics=metrics, charge_policy=fast_policy,
        compensation_timeout=1.0,
    )

    with pytest.raises(ProviderError):
        await service.create_charge(charge_request())
    await service.wait_for_compensations()

    assert stripe.calls == ["charge", "refund"]
    [charge] = stripe.charges.values()
    [refund] = stripe.refunds.values()
    assert refund.payment_id == charge.id
    assert refund.reason == COMPENSATION_REASON
    assert count_payments(session_factory) == 0
    assert metrics.named("compensation") == [("compensation", "succeeded")]
    assert alert_channel.sent == []


@pytest.mark.asyncio
async def test_abandoned_charge_that_never_settles_alerts(
    repository, selector, providers, alerts, alert_channel, metrics, fast_policy
):
    providers["stripe"].latency_seconds = 0.3
    executor = ProviderExecutor(call_timeout=0.02, metrics=metrics, default_policy=fast_policy)
    service = PaymentService(
        repository, selector, executor, alerts=alerts, metrics=metrics, charge_policy=fast_policy,
        compensation_timeout=0.05,
    )

    with pytest.raises(ProviderError):
        await service.create_charge(charge_request())
    await service.wait_for_compensations()

    assert [(a.level.value, a.title) for a in alert_channel.sent] == [("critical", "Charge Outcome Unknown")]
    assert metrics.named("compensation") == [("compensation", "unknown")]
    assert providers["stripe"].calls.count("charge") == 1
    # Let the abandoned call finish before the loop closes.
    await asyncio.sleep(0.35)


@pytest.mark.asyncio
async def test_concurrent_charges_with_same_key_share_one_payment(service, providers, session_factory):
    providers["stripe"].latency_seconds = 0.05

    first, second = await asyncio.gather(
        service.create_charge(charge_request()), service.create_charge(charge_request())
    )
    await service.wait_for_compensations()

    assert first.payment_id == second.payment_id
    assert len(providers["stripe"].charges) == 1
    assert providers["stripe"].refunds == {}
    assert count_payments(session_factory) == 1


@pytest.mark.asyncio
async def test_duplicate_key_with_second_provider_charge_replays_and_compensates(
    service, repository, providers, metrics, mocker
):
    first = await service.create_charge(charge_request())
    stripe = providers["stripe"]
    # The provider no longer remembers the key, so the retry creates a second charge.
    stripe._charge_keys.clear()
    mocker.patch.object(repository, "get_by_idempotency_key", side_effect=[None, first])

    replayed = await service.create_charge(charge_request())
    await service.wait_for_compensations()

    assert replayed.payment_id == first.payment_id
    assert len(stripe.charges) == 2
    [refund] = stripe.refunds.values()
    assert refund.payment_id != first.provider_charge_id
    assert refund.reason == COMPENSATION_REASON
    assert metrics.named("compensation") == [("compensation", "succeeded")]


@pytest.mark.asyncio
async def test_concurrent_refunds_reach_provider_once(service, providers, alert_channel):
    payment = await service.create_charge(charge_request())
    providers["stripe"].latency_seconds = 0.05

    results = await asyncio.gather(
        service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000)),
        service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000)),
        return_exceptions=True,
    )

    assert sorted(type(r).__name__ for r in results) == ["InvalidRequestError", "Refund"]
    assert len(providers["stripe"].refunds) == 1
    assert service.get_payment(payment.payment_id).status == "refunded"
    assert alert_channel.sent == []


@pytest.mark.asyncio
async def test_failed_provider_refund_releases_claim(service, providers):
    payment = await service.create_charge(charge_request())
    providers["stripe"].fail_next(3)

    with pytest.raises(ProviderError):
        await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000))
    assert service.get_payment(payment.payment_id).status == "succeeded"

    refund = await service.create_refund(RefundRequest(payment_id=payment.payment_id, amount=1000))

    assert refund.amount == 1000
    assert service.get_payment(payment.payment_id).status == "refunded"
