"""Durable entity-to-provider mapping store."""

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from payroute.common.errors import DuplicateMappingError, MappingNotFoundError
from payroute.services.provider_adapter.models import ProviderMapping


class ProviderMappingStore:
    """SQLAlchemy-backed store; one short session per call."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get_by_entity(self, entity_id: str, entity_type: str) -> ProviderMapping:
        with self.session_factory() as db:
            mapping = db.execute(
                select(ProviderMapping).where(
                    ProviderMapping.entity_id == entity_id,
                    ProviderMapping.entity_type == entity_type,
                )
            ).scalar_one_or_none()
        if mapping is None:
            raise MappingNotFoundError(entity_type, entity_id)
        return mapping

    def create(self, mapping: ProviderMapping) -> ProviderMapping:
        """Insert a mapping; the `(entity_id, entity_type)` pair must be new."""

        with self.session_factory() as db:
            db.add(mapping)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateMappingError(
                    f"mapping already exists for {mapping.entity_type}: {mapping.entity_id}"
                ) from exc
        return mapping

    def delete(self, entity_id: str, entity_type: str) -> None:
        with self.session_factory() as db:
            db.execute(
                delete(ProviderMapping).where(
                    ProviderMapping.entity_id == entity_id,
                    ProviderMapping.entity_type == entity_type,
                )
            )
            db.commit()

    def list_entity_ids(self, entity_type: str) -> set[str]:
        with self.session_factory() as db:
            rows = db.execute(
                select(ProviderMapping.entity_id).where(ProviderMapping.entity_type == entity_type)
            ).scalars()
            return set(rows)
