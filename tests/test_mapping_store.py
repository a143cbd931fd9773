"""Durable entity-to-provider mapping store."""

import pytest

from payroute.common.errors import DuplicateMappingError, MappingNotFoundError
from payroute.services.provider_adapter.models import ProviderMapping


def mapping(entity_id="ch_1", entity_type="payment", provider="stripe"):
    return ProviderMapping(
        entity_id=entity_id, entity_type=entity_type, provider_name=provider, provider_entity_id=entity_id
    )


def test_create_then_get(mapping_store):
    mapping_store.create(mapping())

    found = mapping_store.get_by_entity("ch_1", "payment")

    assert found.provider_name == "stripe"
    assert found.provider_entity_id == "ch_1"


def test_missing_mapping_raises(mapping_store):
    with pytest.raises(MappingNotFoundError) as excinfo:
        mapping_store.get_by_entity("ch_missing", "payment")
    assert excinfo.value.entity_id == "ch_missing"


def test_duplicate_entity_rejected(mapping_store):
    mapping_store.create(mapping())

    with pytest.raises(DuplicateMappingError):
        mapping_store.create(mapping(provider="xendit"))
    assert mapping_store.get_by_entity("ch_1", "payment").provider_name == "stripe"


def test_same_id_different_entity_type_allowed(mapping_store):
    mapping_store.create(mapping())
    mapping_store.create(mapping(entity_type="invoice", provider="xendit"))

    assert mapping_store.get_by_entity("ch_1", "invoice").provider_name == "xendit"


def test_delete_and_list(mapping_store):
    mapping_store.create(mapping("ch_1"))
    mapping_store.create(mapping("ch_2"))
    mapping_store.create(mapping("inv_1", entity_type="invoice"))

    mapping_store.delete("ch_1", "payment")

    assert mapping_store.list_entity_ids("payment") == {"ch_2"}
    assert mapping_store.list_entity_ids("invoice") == {"inv_1"}
