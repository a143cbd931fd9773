"""Internal HTTP surface for charges, refunds, provider status and webhooks."""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from payroute.common.alerts import AlertManager
from payroute.common.circuit_breaker import CircuitBreakerConfig
from payroute.common.config import settings
from payroute.common.db import Base, SessionLocal, engine
from payroute.common.errors import (
    CircuitOpenError,
    InvalidRequestError,
    InvalidSignatureError,
    NoAvailableProviderError,
    NotFoundError,
    NotSupportedError,
    PaymentError,
    ProviderError,
    ProviderUnavailableError,
)
from payroute.common.logging import configure_logging, logger, trace_id_ctx
from payroute.common.metrics import (
    MetricsSink,
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from payroute.common.retry import RetryPolicy, provider_retryable
from payroute.common.startup import log_startup_config
from payroute.common.tracing import instrument_app, setup_tracing
from payroute.services.orchestrator.reconcile import reconcile_payment_mappings
from payroute.services.orchestrator.repository import PaymentRepository
from payroute.services.orchestrator.schemas import (
    ChargeCreateRequest,
    PaymentResponse,
    ReconciliationResponse,
    RefundCreateRequest,
    RefundResponse,
)
from payroute.services.orchestrator.service import PaymentService
from payroute.services.provider_adapter.executor import ProviderExecutor
from payroute.services.provider_adapter.sandbox import build_providers
from payroute.services.provider_adapter.schemas import ChargeRequest, RefundRequest
from payroute.services.provider_adapter.selector import MultiProviderSelector
from payroute.services.provider_adapter.store import ProviderMappingStore
from payroute.services.provider_adapter.webhooks import WebhookVerifier

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)

metrics_sink = MetricsSink(settings.service_name)
alerts = AlertManager()
mapping_store = ProviderMappingStore(SessionLocal)
repository = PaymentRepository(SessionLocal)
selector = MultiProviderSelector(
    build_providers(settings.providers),
    mapping_store,
    currency_routes=settings.currency_routes,
    default_provider=settings.default_provider,
    probe_timeout=settings.availability_probe_timeout_seconds,
    alerts=alerts,
    metrics=metrics_sink,
)
executor = ProviderExecutor(
    CircuitBreakerConfig(
        max_failures=settings.breaker_max_failures,
        timeout=settings.breaker_timeout_seconds,
        half_open_max=settings.breaker_half_open_max,
    ),
    call_timeout=settings.provider_call_timeout_seconds,
    metrics=metrics_sink,
    default_policy=RetryPolicy(
        max_retries=settings.retry_max_retries,
        initial_delay=settings.retry_initial_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        multiplier=settings.retry_multiplier,
        jitter=settings.retry_jitter,
        retryable=provider_retryable,
    ),
)
service = PaymentService(
    repository,
    selector,
    executor,
    alerts=alerts,
    metrics=metrics_sink,
    compensation_timeout=settings.compensation_timeout_seconds,
)
webhooks = WebhookVerifier(settings.webhook_secrets)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create the schema in dev setups and drain compensations on shutdown."""

    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    yield
    await service.wait_for_compensations()


app = FastAPI(title="PayRoute Orchestrator", lifespan=lifespan)
instrument_app(app)


def status_for(exc: PaymentError) -> int:
    if isinstance(exc, (InvalidRequestError, NotSupportedError)):
        return 400
    if isinstance(exc, InvalidSignatureError):
        return 401
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (NoAvailableProviderError, ProviderUnavailableError, CircuitOpenError)):
        return 503
    if isinstance(exc, ProviderError):
        return 502
    return 500


@app.exception_handler(PaymentError)
async def payment_error_handler(_: Request, exc: PaymentError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("request failed status=%s error_type=%s error=%s", status_code, type(exc).__name__, exc)
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _payment_response(payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        customer_id=payment.customer_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        provider_name=payment.provider_name,
        provider_charge_id=payment.provider_charge_id,
        capture_method=payment.capture_method,
        captured_amount=payment.captured_amount,
        next_action_type=payment.next_action_type,
        next_action_url=payment.next_action_url,
        idempotency_key=payment.idempotency_key,
        created_at=payment.created_at,
    )


def _refund_response(refund) -> RefundResponse:
    return RefundResponse(
        refund_id=refund.refund_id,
        payment_id=refund.payment_id,
        amount=refund.amount,
        currency=refund.currency,
        status=refund.status,
        reason=refund.reason,
        provider_name=refund.provider_name,
        provider_refund_id=refund.provider_refund_id,
    )


@app.post("/payments/charges", response_model=PaymentResponse, status_code=201)
async def create_charge(req: ChargeCreateRequest, x_trace_id: str | None = Header(default=None)):
    """Charge through the routed provider and record the payment."""

    trace_id_ctx.set(x_trace_id or str(uuid4()))
    payment = await service.create_charge(ChargeRequest(**req.model_dump()))
    return _payment_response(payment)


@app.post("/payments/refunds", response_model=RefundResponse, status_code=201)
async def create_refund(req: RefundCreateRequest, x_trace_id: str | None = Header(default=None)):
    trace_id_ctx.set(x_trace_id or str(uuid4()))
    refund = await service.create_refund(RefundRequest(**req.model_dump()))
    return _refund_response(refund)


@app.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str):
    """Fetch the local record for one payment."""

    return _payment_response(service.get_payment(payment_id))


@app.get("/payments/{payment_id}/refunds", response_model=list[RefundResponse])
def list_refunds(payment_id: str):
    return [_refund_response(refund) for refund in service.list_refunds(payment_id)]


@app.get("/providers")
async def provider_status():
    """Provider availability, capabilities and circuit breaker states."""

    stats = await selector.get_provider_stats()
    stats["circuit_breakers"] = {
        name: {"state": snap.state.value, "failure_count": snap.failure_count, "success_count": snap.success_count}
        for name, snap in executor.breaker_states().items()
    }
    return stats


@app.post("/webhooks/{provider}")
async def receive_webhook(provider: str, request: Request, x_signature: str | None = Header(default=None)):
    """Accept a provider webhook after verifying its HMAC signature."""

    payload = await request.body()
    webhooks.verify(provider, payload, x_signature)
    logger.info("webhook accepted provider=%s bytes=%s", provider, len(payload))
    return {"received": True}


@app.post("/reconciliation/mappings", response_model=ReconciliationResponse)
def reconcile_mappings(limit: int = 500):
    """Rewrite payment mappings missing from the durable store."""

    return reconcile_payment_mappings(repository, mapping_store, limit=limit)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
