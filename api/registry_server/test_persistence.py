import asyncio
import json
import os

import pytest

from conftest import node_payload
from services.persistence import PersistenceError, load_bootstrap, read_collection, write_collection_atomic
from services.registry import NodeRegistry

DOC = {"type": "FeatureCollection", "features": [{"type": "Feature", "properties": {"id": "a"}}]}


def write_json(path, document):
    path.write_text(json.dumps(document), encoding="utf-8")
    return str(path)


def test_atomic_write_creates_directories_and_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "dir" / "nodes.json"
    write_collection_atomic(str(target), DOC)

    assert json.loads(target.read_text(encoding="utf-8")) == DOC
    assert target.read_text(encoding="utf-8").startswith('{\n  "type"')
    assert os.listdir(target.parent) == ["nodes.json"]


def test_atomic_write_replaces_previous_snapshot(tmp_path):
    target = tmp_path / "nodes.json"
    write_collection_atomic(str(target), DOC)
    write_collection_atomic(str(target), {"type": "FeatureCollection", "features": []})
    assert json.loads(target.read_text(encoding="utf-8"))["features"] == []


def test_failed_write_keeps_old_file_and_cleans_up(tmp_path):
    target = tmp_path / "nodes.json"
    write_collection_atomic(str(target), DOC)

    with pytest.raises(TypeError):
        write_collection_atomic(str(target), {"not": object()})

    assert json.loads(target.read_text(encoding="utf-8")) == DOC
    assert os.listdir(tmp_path) == ["nodes.json"]


def test_read_collection_rejects_non_collections(tmp_path):
    assert read_collection(str(tmp_path / "missing.json")) is None
    assert read_collection(write_json(tmp_path / "list.json", [1, 2])) is None
    assert read_collection(write_json(tmp_path / "wrong.json", {"type": "Feature"})) is None
    assert read_collection(write_json(tmp_path / "nofeatures.json", {"type": "FeatureCollection"})) is None
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert read_collection(str(broken)) is None


def test_load_bootstrap_prefers_primary_then_seed(tmp_path):
    primary = tmp_path / "nodes.json"
    seed = write_json(tmp_path / "seed.json", DOC)

    assert load_bootstrap([str(primary), seed]) == (DOC["features"], seed)

    write_json(primary, {"type": "FeatureCollection", "features": []})
    assert load_bootstrap([str(primary), seed]) == ([], str(primary))

    assert load_bootstrap([str(tmp_path / "a.json"), str(tmp_path / "b.json")]) == ([], None)


# ---------------------------------------------------------------------------
# registry bootstrap & persistence
# ---------------------------------------------------------------------------


def test_bootstrap_skips_malformed_features(settings, tmp_path, caplog):
    write_json(
        tmp_path / "nodes.json",
        {
            "type": "FeatureCollection",
            "features": [
                node_payload("Good Node"),
                node_payload("Bad Geometry", coordinates=None) | {"geometry": {"type": "LineString"}},
                {"type": "Feature", "properties": {}, "geometry": {"type": "Point", "coordinates": [0, 0]}},
                node_payload("Good Node"),
            ],
        },
    )
    registry = NodeRegistry(settings)

    with caplog.at_level("WARNING", logger="agrinet.registry"):
        source = asyncio.run(registry.bootstrap())

    assert source == settings.data_file
    assert registry.store.ids() == ["good-node", "good-node-2"]
    assert "Only Point geometries are supported" in caplog.text
    assert "node_name" in caplog.text


def test_bootstrap_falls_back_to_seed(settings, tmp_path):
    write_json(tmp_path / "seed.json", {"type": "FeatureCollection", "features": [node_payload("Seeded", id="seeded")]})
    registry = NodeRegistry(settings)
    assert asyncio.run(registry.bootstrap()) == settings.seed_file
    assert registry.store.ids() == ["seeded"]


def test_bootstrap_starts_empty_without_files(settings, tmp_path):
    os.remove(settings.seed_file)
    registry = NodeRegistry(settings)
    assert asyncio.run(registry.bootstrap()) is None
    assert len(registry.store) == 0


def test_restart_reloads_identical_nodes(settings):
    async def first_run():
        registry = NodeRegistry(settings)
        await registry.bootstrap()
        await registry.register(
            node_payload(
                "Round Trip",
                languages=["English", "Swahili"],
                ping_categories=["market"],
                fork_repo="https://example.org/fork",
                capacity=4,
                organic=False,
                last_seen="2025-01-01T00:00:00Z",
            )
        )
        await registry.register(node_payload("Round Trip"))
        await registry.heartbeat("round-trip-2", {"properties": {"region": "Coast"}})
        return registry.store.to_collection()

    async def second_run():
        registry = NodeRegistry(settings)
        await registry.bootstrap()
        return registry.store.to_collection()

    before = asyncio.run(first_run())
    after = asyncio.run(second_run())

    assert [f["properties"]["id"] for f in after["features"]] == ["round-trip", "round-trip-2"]
    assert after == before


def test_persistence_failure_raises_but_keeps_memory_state(settings):
    def failing_writer(path, document):
        raise OSError("disk full")

    async def scenario():
        registry = NodeRegistry(settings, writer=failing_writer)
        with pytest.raises(PersistenceError, match="disk full"):
            await registry.register(node_payload("Unsaved"))
        # the failure released the write queue
        with pytest.raises(PersistenceError):
            await registry.register(node_payload("Also Unsaved"))
        return registry

    registry = asyncio.run(scenario())
    assert registry.store.ids() == ["unsaved", "also-unsaved"]
    assert not os.path.exists(settings.data_file)
