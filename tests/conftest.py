"""Shared fixtures: in-memory SQLite, sandbox providers and recording sinks."""

import os

os.environ["OTEL_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_SCHEMA"] = "true"

from contextlib import nullcontext  # noqa: E402

import pytest  # noqa: E402

from payroute.common.alerts import AlertManager  # noqa: E402
from payroute.common.circuit_breaker import CircuitBreakerConfig  # noqa: E402
from payroute.common.db import Base, make_engine, make_session_factory  # noqa: E402
from payroute.common.metrics import MetricsSink  # noqa: E402
from payroute.common.retry import RetryPolicy, provider_retryable  # noqa: E402
from payroute.common.config import DEFAULT_CURRENCY_ROUTES  # noqa: E402
from payroute.services.orchestrator import models as orchestrator_models  # noqa: E402,F401
from payroute.services.orchestrator.repository import PaymentRepository  # noqa: E402
from payroute.services.orchestrator.service import PaymentService  # noqa: E402
from payroute.services.provider_adapter.executor import ProviderExecutor  # noqa: E402
from payroute.services.provider_adapter.sandbox import SandboxProvider  # noqa: E402
from payroute.services.provider_adapter.selector import MultiProviderSelector  # noqa: E402
from payroute.services.provider_adapter.store import ProviderMappingStore  # noqa: E402

FAST_POLICY = RetryPolicy(max_retries=2, initial_delay=0.001, max_delay=0.01, jitter=False, retryable=provider_retryable)


class RecordingMetrics(MetricsSink):
    """Captures metric calls instead of touching Prometheus collectors."""

    def __init__(self) -> None:
        super().__init__("test")
        self.events: list[tuple] = []

    def payment(self, provider, currency, status):
        self.events.append(("payment", provider, currency, status))

    def refund(self, provider, status):
        self.events.append(("refund", provider, status))

    def error(self, operation, error_type):
        self.events.append(("error", operation, error_type))

    def latency(self, operation):
        return nullcontext()

    def provider_call(self, provider, operation, outcome):
        self.events.append(("provider_call", provider, operation, outcome))

    def retry(self, dependency):
        self.events.append(("retry", dependency))

    def circuit_state(self, breaker, state):
        self.events.append(("circuit_state", breaker, state))

    def mapping_failure(self, entity_type):
        self.events.append(("mapping_failure", entity_type))

    def compensation(self, outcome):
        self.events.append(("compensation", outcome))

    def named(self, kind: str) -> list[tuple]:
        return [e for e in self.events if e[0] == kind]


class RecordingChannel:
    def __init__(self) -> None:
        self.sent = []

    def send(self, alert) -> None:
        self.sent.append(alert)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def alert_channel():
    return RecordingChannel()


@pytest.fixture
def alerts(alert_channel):
    return AlertManager([alert_channel])


@pytest.fixture
def mapping_store(session_factory):
    return ProviderMappingStore(session_factory)


@pytest.fixture
def repository(session_factory):
    return PaymentRepository(session_factory)


@pytest.fixture
def providers():
    return {name: SandboxProvider(name) for name in ("stripe", "xendit", "razorpay", "airwallex")}


@pytest.fixture
def selector(providers, mapping_store, alerts, metrics):
    return MultiProviderSelector(
        providers.values(),
        mapping_store,
        currency_routes=DEFAULT_CURRENCY_ROUTES,
        default_provider="stripe",
        probe_timeout=0.05,
        alerts=alerts,
        metrics=metrics,
    )


@pytest.fixture
def executor(metrics):
    return ProviderExecutor(
        CircuitBreakerConfig(max_failures=5, timeout=30.0, half_open_max=3),
        call_timeout=1.0,
        metrics=metrics,
        default_policy=FAST_POLICY,
    )


@pytest.fixture
def service(repository, selector, executor, alerts, metrics):
    return PaymentService(
        repository,
        selector,
        executor,
        alerts=alerts,
        metrics=metrics,
        charge_policy=FAST_POLICY,
        refund_policy=FAST_POLICY,
        compensation_timeout=1.0,
    )


@pytest.fixture
def fast_policy():
    return FAST_POLICY
