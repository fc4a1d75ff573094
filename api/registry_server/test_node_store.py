from datetime import datetime, timedelta, timezone

from models import NodeFeature, PointGeometry
from services.node_store import NodeStore, is_online

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def node(node_id, last_seen="2025-06-01T11:58:00.000Z", **extra):
    properties = {"id": node_id, "node_name": node_id.title(), "last_seen": last_seen, **extra}
    return NodeFeature(properties=properties, geometry=PointGeometry(coordinates=(1.0, 2.0)))


def test_upsert_get_and_replace():
    store = NodeStore()
    store.upsert(node("alpha"))
    store.upsert(node("beta"))
    store.upsert(node("alpha", region="Coast"))

    assert len(store) == 2
    assert "alpha" in store
    assert store.get("alpha").properties["region"] == "Coast"
    assert store.get("missing") is None
    # replacing keeps the original insertion position
    assert store.ids() == ["alpha", "beta"]


def test_remove_reports_whether_record_existed():
    store = NodeStore([node("alpha")])
    assert store.remove("alpha") is True
    assert store.remove("alpha") is False
    assert len(store) == 0


def test_is_online_threshold():
    assert is_online(node("a", "2025-06-01T11:55:00.000Z"), NOW) is True
    assert is_online(node("a", "2025-06-01T11:54:59.999Z"), NOW) is False
    assert is_online(node("a", last_seen=None), NOW) is False


def test_snapshot_derives_online_flag_without_storing_it():
    store = NodeStore([node("fresh"), node("stale", "2025-01-01T00:00:00.000Z")])

    snapshot = store.snapshot(NOW)
    assert snapshot["type"] == "FeatureCollection"
    flags = {f["properties"]["id"]: f["properties"]["_isOnline"] for f in snapshot["features"]}
    assert flags == {"fresh": True, "stale": False}

    assert "_isOnline" not in store.get("fresh").properties
    later = store.snapshot(NOW + timedelta(minutes=10))
    assert later["features"][0]["properties"]["_isOnline"] is False


def test_persistence_document_has_no_derived_fields():
    store = NodeStore([node("alpha")])
    document = store.to_collection()
    assert document == {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {
                    "id": "alpha",
                    "node_name": "Alpha",
                    "last_seen": "2025-06-01T11:58:00.000Z",
                },
                "geometry": {"type": "Point", "coordinates": [1.0, 2.0]},
            }
        ],
    }


def test_replace_all_swaps_contents():
    store = NodeStore([node("alpha")])
    store.replace_all([node("beta"), node("gamma")])
    assert store.ids() == ["beta", "gamma"]
