"""Restore missing payment-to-provider mappings from local payment rows.

A mapping write that failed after a successful charge leaves a Payment whose
owning provider is only recorded on the row itself. This pass rewrites the
durable mapping so later refunds resolve without the fallback path.
"""

from payroute.common.errors import DuplicateMappingError
from payroute.common.logging import logger
from payroute.services.orchestrator.repository import PaymentRepository
from payroute.services.orchestrator.schemas import ReconciliationResponse
from payroute.services.provider_adapter.models import EntityType, ProviderMapping
from payroute.services.provider_adapter.store import ProviderMappingStore


def reconcile_payment_mappings(
    repository: PaymentRepository,
    mapping_store: ProviderMappingStore,
    limit: int = 500,
) -> ReconciliationResponse:
    mapped = mapping_store.list_entity_ids(EntityType.PAYMENT.value)
    missing = repository.list_unmapped_payments(mapped, limit=limit)
    restored: list[str] = []
    failed = 0
    for payment in missing:
        try:
            mapping_store.create(
                ProviderMapping(
                    entity_id=payment.provider_charge_id,
                    entity_type=EntityType.PAYMENT.value,
                    provider_name=payment.provider_name,
                    provider_entity_id=payment.provider_charge_id,
                )
            )
        except DuplicateMappingError:
            # Written concurrently by the selector since the scan.
            continue
        except Exception as exc:
            failed += 1
            logger.error(
                "mapping restore failed payment_id=%s provider_charge_id=%s error=%s",
                payment.payment_id,
                payment.provider_charge_id,
                exc,
            )
            continue
        restored.append(payment.payment_id)
        logger.info(
            "mapping restored payment_id=%s provider=%s provider_charge_id=%s",
            payment.payment_id,
            payment.provider_name,
            payment.provider_charge_id,
        )
    return ReconciliationResponse(checked=len(missing), restored=len(restored), failed=failed, restored_ids=restored)
