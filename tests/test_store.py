import pytest

from venue_catalog.store import VenueStore


def base_fields(pid="p1", key="k1"):
    return {
        "primary_provider_id": pid,
        "canonical_key": key,
        "canonical_key_basis": "primary_address",
        "city": "Buenos Aires",
        "name": "Café",
        "opening_hours": ["Mon: 0800-2000"],
        "has_secondary_data": False,
    }


def test_upsert_round_trips_list_and_bool_columns():
    store = VenueStore(":memory:")
    venue_id = store.upsert(base_fields())

    venue = store.get_venue(venue_id)
    assert venue["opening_hours"] == ["Mon: 0800-2000"]
    assert venue["photo_urls"] == []
    assert venue["has_secondary_data"] is False
    assert venue["tier"] == "none"
    assert venue["created_at"]
    store.close()


def test_update_writes_only_given_columns():
    store = VenueStore(":memory:")
    venue_id = store.upsert(base_fields())

    store.upsert({"phone": "+54 11 1234"}, venue_id=venue_id)
    venue = store.get_venue(venue_id)

    assert venue["phone"] == "+54 11 1234"
    assert venue["name"] == "Café"
    assert venue["opening_hours"] == ["Mon: 0800-2000"]
    store.close()


def test_primary_provider_id_is_immutable_and_columns_are_checked():
    store = VenueStore(":memory:")
    venue_id = store.upsert(base_fields())

    with pytest.raises(ValueError):
        store.upsert({"primary_provider_id": "other"}, venue_id=venue_id)
    with pytest.raises(ValueError):
        store.upsert({"colour": "red"}, venue_id=venue_id)
    store.close()


def test_lookups_by_provider_id_and_key_scoped_to_city():
    store = VenueStore(":memory:")
    venue_id = store.upsert(base_fields())
    store.attach_provider_id("p2", venue_id)
    store.attach_provider_id("p2", venue_id)

    assert store.find_by_provider_id("p2")["id"] == venue_id
    assert store.find_by_canonical_key("k1", "Buenos Aires")["id"] == venue_id
    assert store.find_by_canonical_key("k1", "New Orleans") is None
    assert store.provider_ids_for(venue_id) == ["p1", "p2"]
    store.close()


def test_data_survives_reopen(tmp_path):
    path = str(tmp_path / "catalog.db")
    with VenueStore(path) as store:
        venue_id = store.upsert(base_fields())
        store.set_search_cache("k", {"places": []})

    with VenueStore(path) as store:
        assert store.get_venue(venue_id)["name"] == "Café"
        assert store.get_search_cache("k") == {"places": []}


def test_record_run():
    store = VenueStore(":memory:")
    store.record_run({"source": "pipeline:ba", "city": "ba", "status": "success", "saved": 3})

    (run,) = store.list_runs()
    assert run["saved"] == 3
    assert run["error"] is None
    store.close()
