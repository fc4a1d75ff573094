import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from config import Settings
from server import create_app

WRITE_TOKEN = "test-write-token"
AUTH = {"Authorization": f"Bearer {WRITE_TOKEN}"}


def node_payload(
    node_name: str = "Valid Node",
    coordinates: Optional[List[float]] = None,
    **properties: Any,
) -> Dict[str, Any]:
    props: Dict[str, Any] = {
        "node_name": node_name,
        "contact_email": "ops@example.org",
        "node_type": "Service",
    }
    props.update(properties)
    return {
        "type": "Feature",
        "properties": props,
        "geometry": {"type": "Point", "coordinates": coordinates or [36.82, -1.29]},
    }


@pytest.fixture
def settings(tmp_path) -> Settings:
    seed = tmp_path / "seed.json"
    seed.write_text(json.dumps({"type": "FeatureCollection", "features": []}), encoding="utf-8")
    return Settings(
        host="127.0.0.1",
        port=0,
        data_file=str(tmp_path / "nodes.json"),
        seed_file=str(seed),
        write_token=WRITE_TOKEN,
        read_origins="*",
        write_origins="*",
        rate_limit_window_ms=60_000,
        rate_limit_max_writes=0,
        sse_keepalive_ms=25_000,
    )


@pytest.fixture
def make_client(settings):
    """Factory: a TestClient (lifespan started) for `settings` with overrides."""
    opened = []

    def factory(**overrides) -> TestClient:
        app = create_app(settings.model_copy(update=overrides))
        client = TestClient(app)
        client.__enter__()
        opened.append(client)
        return client

    yield factory

    for client in opened:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()
