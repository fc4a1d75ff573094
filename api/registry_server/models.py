from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional, Tuple


class PointGeometry(BaseModel):
    """GeoJSON Point. The only geometry kind a node may carry."""

    model_config = ConfigDict(frozen=True)

    type: Literal["Point"] = "Point"
    coordinates: Tuple[float, float]

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]


# Node schema compatible with the map layer consumed by the docs site
class NodeFeature(BaseModel):
    """
    NodeFeature
    A single registered node, stored and served as a GeoJSON Feature.

    Fields
    - type: always "Feature".
    - properties: validated node properties. Always holds `id`, `node_name`
      and `last_seen` once the record is in the store; known optional fields
      (node_type, contact_email, fork_repo, languages, ping_categories) and
      passthrough scalars sit alongside them.
    - geometry: the node location as a Point.

    Notes
    - Records are never edited in place. Updates build a new NodeFeature and
      replace the old one in the store.
    - `_isOnline` is derived when a record is served and is never stored here.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["Feature"] = "Feature"
    properties: Dict[str, Any]
    geometry: PointGeometry

    @property
    def node_id(self) -> Optional[str]:
        return self.properties.get("id")

    @property
    def last_seen(self) -> Optional[str]:
        return self.properties.get("last_seen")

    def to_geojson(self, is_online: Optional[bool] = None) -> Dict[str, Any]:
        properties = dict(self.properties)
        if is_online is not None:
            properties["_isOnline"] = is_online
        return {
            "type": "Feature",
            "properties": properties,
            "geometry": {"type": "Point", "coordinates": list(self.geometry.coordinates)},
        }


class NodePatch(BaseModel):
    """Validated heartbeat update.

    `properties` holds only the fields the caller sent; a value of None means
    "clear this field". `last_seen` is always set (it defaults to the time
    the heartbeat was parsed).
    """

    model_config = ConfigDict(frozen=True)

    last_seen: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    geometry: Optional[PointGeometry] = None


class NodeCollection(BaseModel):
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[Dict[str, Any]] = Field(default_factory=list)
