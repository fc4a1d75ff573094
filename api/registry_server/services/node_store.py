from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from models import NodeCollection, NodeFeature
from node_schema import parse_timestamp, NodeValidationError


ONLINE_THRESHOLD = timedelta(minutes=5)


def is_online(feature: NodeFeature, now: datetime) -> bool:
    """True when the node's last heartbeat is no older than ONLINE_THRESHOLD."""
    if not feature.last_seen:
        return False
    try:
        last_seen = parse_timestamp(feature.last_seen)
    except NodeValidationError:
        return False
    return now - last_seen <= ONLINE_THRESHOLD


class NodeStore:
    """
    In-memory map of node id -> NodeFeature, kept in insertion order.

    The store does not enforce uniqueness or validate anything: callers check
    existence first to choose create vs. update semantics. Records are
    replaced whole, never edited in place, so a reader always sees either the
    old or the new version of a node.
    """

    def __init__(self, features: Optional[Iterable[NodeFeature]] = None):
        self._nodes: Dict[str, NodeFeature] = {}
        for feature in features or ():
            self.upsert(feature)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def ids(self) -> List[str]:
        return list(self._nodes)

    def features(self) -> List[NodeFeature]:
        return list(self._nodes.values())

    def get(self, node_id: str) -> Optional[NodeFeature]:
        return self._nodes.get(node_id)

    def upsert(self, feature: NodeFeature) -> None:
        node_id = feature.node_id
        if not node_id:
            raise ValueError("cannot store a node without an id")
        self._nodes[node_id] = feature

    def remove(self, node_id: str) -> bool:
        return self._nodes.pop(node_id, None) is not None

    def replace_all(self, features: Iterable[NodeFeature]) -> None:
        nodes: Dict[str, NodeFeature] = {}
        for feature in features:
            nodes[feature.node_id] = feature
        self._nodes = nodes

    def to_collection(self) -> Dict[str, Any]:
        """Persistence document: every record, no derived fields."""
        return NodeCollection(features=[f.to_geojson() for f in self._nodes.values()]).model_dump()

    def snapshot(self, now: datetime) -> Dict[str, Any]:
        """Collection with `_isOnline` computed against `now`. Never cached."""
        features = [f.to_geojson(is_online=is_online(f, now)) for f in self._nodes.values()]
        return NodeCollection(features=features).model_dump()
