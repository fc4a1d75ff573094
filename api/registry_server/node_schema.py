"""Validation and normalisation of node payloads.

This module turns arbitrary decoded JSON into `NodeFeature` / `NodePatch`
records, or rejects it with a `NodeValidationError` naming the offending
field. Everything here is pure: the only inputs are the payload, the
current time and (for id assignment) the set of ids already in use.

Two property modes exist:
- strict: registration. `node_name` is required and `id` may be supplied.
- partial: heartbeat. Nothing is required and `id` is forbidden.

Design decisions:
- Known optional fields that are null or blank are dropped on registration
  and cleared on heartbeat; `node_name` can never be cleared.
- Unknown fields pass through only when they are scalars.
- `_isOnline` is derived and silently discarded from incoming payloads, so
  clients may echo served features back.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple
from urllib.parse import urlparse

from models import NodeFeature, NodePatch, PointGeometry

MAX_TEXT_LENGTH = 240
MAX_EMAIL_LENGTH = 254
MAX_URL_LENGTH = 2048
MAX_LIST_ENTRIES = 32

ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

LIST_FIELDS = ("languages", "ping_categories")
TEXT_FIELDS = ("node_name", "node_type")
DERIVED_FIELDS = ("_isOnline",)

Mode = Literal["strict", "partial"]


class NodeValidationError(ValueError):
    """A payload failed validation. `field` names the offending property."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


# ---------------------------------------------------------------------------
# geometry & timestamps
# ---------------------------------------------------------------------------


def _as_finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def normalize_geometry(raw: Any) -> PointGeometry:
    if not isinstance(raw, Mapping):
        raise NodeValidationError("Missing geometry", "geometry")

    if raw.get("type") != "Point":
        raise NodeValidationError("Only Point geometries are supported", "geometry")

    coordinates = raw.get("coordinates")
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
        raise NodeValidationError(
            "Point coordinates must be an array of [longitude, latitude]", "geometry"
        )

    lon = _as_finite_number(coordinates[0])
    lat = _as_finite_number(coordinates[1])
    if lon is None or lat is None:
        raise NodeValidationError("coordinates must be numeric", "geometry")

    if not -180.0 <= lon <= 180.0:
        raise NodeValidationError("longitude must be between -180 and 180", "geometry")
    if not -90.0 <= lat <= 90.0:
        raise NodeValidationError("latitude must be between -90 and 90", "geometry")

    return PointGeometry(coordinates=(lon, lat))


def format_timestamp(moment: datetime) -> str:
    """Render `moment` as UTC ISO-8601 with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if isinstance(raw, bool):
        raise NodeValidationError("Invalid last_seen timestamp", "last_seen")

    try:
        if isinstance(raw, (int, float)):
            if not math.isfinite(raw):
                raise ValueError(raw)
            return datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
        if isinstance(raw, str) and raw.strip():
            text = raw.strip()
            if text.endswith(("z", "Z")):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    except (ValueError, OverflowError, OSError):
        pass

    raise NodeValidationError("Invalid last_seen timestamp", "last_seen")


def normalize_timestamp(raw: Any, now: datetime) -> str:
    if raw is None or raw == "":
        return format_timestamp(now)
    return format_timestamp(parse_timestamp(raw))


# ---------------------------------------------------------------------------
# properties
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require_utf8(field: str, text: str) -> str:
    # lone surrogates survive json.loads but cannot be written back out
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        raise NodeValidationError(f"`{field}` must be valid Unicode text", field)
    return text


def _text(field: str, value: Any, limit: int = MAX_TEXT_LENGTH) -> str:
    if not isinstance(value, str):
        raise NodeValidationError(f"`{field}` must be a string", field)
    text = _require_utf8(field, value.strip())
    if len(text) > limit:
        raise NodeValidationError(f"`{field}` must be at most {limit} characters", field)
    return text


def _node_id(value: Any) -> str:
    text = _text("id", value)
    if not ID_PATTERN.match(text):
        raise NodeValidationError(
            "`id` may only contain letters, digits, '.', '_' and '-'", "id"
        )
    return text


def _email(value: Any) -> str:
    text = _text("contact_email", value, MAX_EMAIL_LENGTH)
    if not EMAIL_PATTERN.match(text):
        raise NodeValidationError("`contact_email` must be a valid email address", "contact_email")
    return text


def _url(value: Any) -> str:
    text = _text("fork_repo", value, MAX_URL_LENGTH)
    parsed = urlparse(text)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise NodeValidationError("`fork_repo` must be an absolute http(s) URL", "fork_repo")
    return text


def _string_set(field: str, value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise NodeValidationError(f"`{field}` must be a list of strings", field)

    entries: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise NodeValidationError(f"`{field}` must be a list of strings", field)
        text = _require_utf8(field, item.strip())
        if not text:
            continue
        if len(text) > MAX_TEXT_LENGTH:
            raise NodeValidationError(
                f"`{field}` entries must be at most {MAX_TEXT_LENGTH} characters", field
            )
        if text not in entries:
            entries.append(text)

    if len(entries) > MAX_LIST_ENTRIES:
        raise NodeValidationError(f"`{field}` may hold at most {MAX_LIST_ENTRIES} entries", field)
    return entries


def _passthrough(field: str, value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise NodeValidationError(f"`{field}` must be a finite number", field)
        return value
    if isinstance(value, str):
        return _text(field, value)
    raise NodeValidationError(f"Unsupported property type for `{field}`", field)


def normalize_properties(raw: Any, mode: Mode) -> Dict[str, Any]:
    """Validate a properties object field by field.

    Returns the cleaned properties in their original order. In partial mode a
    None value means "clear this field" and is kept in the result; in strict
    mode such fields are simply omitted. `last_seen` is left untouched for the
    caller to normalise against its clock.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise NodeValidationError("`properties` must be an object", "properties")

    cleaned: Dict[str, Any] = {}
    for field, value in raw.items():
        if not isinstance(field, str) or not field:
            raise NodeValidationError("Property names must be non-empty strings", "properties")
        _require_utf8("properties", field)
        if field in DERIVED_FIELDS:
            continue
        if field == "last_seen":
            cleaned[field] = value
            continue

        if field == "id":
            if mode == "partial":
                raise NodeValidationError("Property `id` may not be modified", "id")
            if not _is_blank(value):
                cleaned["id"] = _node_id(value)
            continue

        if field == "node_name":
            if _is_blank(value):
                if mode == "partial":
                    raise NodeValidationError("`node_name` must be a non-empty string", "node_name")
                continue
            cleaned[field] = _text(field, value)
            continue

        if _is_blank(value) and (field in TEXT_FIELDS or field in LIST_FIELDS
                                 or field in ("contact_email", "fork_repo")):
            if mode == "partial":
                cleaned[field] = None
            continue

        if field == "node_type":
            cleaned[field] = _text(field, value)
        elif field == "contact_email":
            cleaned[field] = _email(value)
        elif field == "fork_repo":
            cleaned[field] = _url(value)
        elif field in LIST_FIELDS:
            cleaned[field] = _string_set(field, value)
        elif value is None:
            if mode == "partial":
                cleaned[field] = None
        else:
            cleaned[field] = _passthrough(field, value)

    if mode == "strict" and not cleaned.get("node_name"):
        raise NodeValidationError("`node_name` is required", "node_name")

    return cleaned


# ---------------------------------------------------------------------------
# registration & heartbeat payloads
# ---------------------------------------------------------------------------


def _split_feature(body: Any) -> Tuple[Any, Any]:
    """Return (properties, geometry) from a Feature or a flattened object."""
    if not isinstance(body, Mapping):
        raise NodeValidationError("Request body must be a JSON object")

    if body.get("type") == "Feature":
        return body.get("properties"), body.get("geometry")

    properties = {key: value for key, value in body.items() if key != "geometry"}
    return properties, body.get("geometry")


def parse_registration(body: Any, now: datetime) -> NodeFeature:
    """Validate a registration payload. The id is assigned later by the store owner."""
    raw_properties, raw_geometry = _split_feature(body)
    geometry = normalize_geometry(raw_geometry)
    properties = normalize_properties(raw_properties, "strict")
    properties["last_seen"] = normalize_timestamp(properties.get("last_seen"), now)
    return NodeFeature(properties=properties, geometry=geometry)


def parse_heartbeat(body: Any, now: datetime) -> NodePatch:
    """Validate a heartbeat payload.

    Accepts `{"last_seen": ..., "properties": {...}, "geometry": {...}}` as
    well as a Feature-shaped body. A top-level `last_seen` wins over one
    inside `properties`.
    """
    if body is None:
        body = {}
    if not isinstance(body, Mapping):
        raise NodeValidationError("Request body must be a JSON object")
    if "id" in body:
        raise NodeValidationError("Property `id` may not be modified", "id")

    properties = normalize_properties(body.get("properties"), "partial")
    raw_last_seen = properties.pop("last_seen", None)
    if body.get("last_seen") not in (None, ""):
        raw_last_seen = body.get("last_seen")

    geometry = None
    if body.get("geometry") is not None:
        geometry = normalize_geometry(body.get("geometry"))

    return NodePatch(
        last_seen=normalize_timestamp(raw_last_seen, now),
        properties=properties,
        geometry=geometry,
    )


def apply_patch(feature: NodeFeature, patch: NodePatch) -> NodeFeature:
    """Merge `patch` into `feature`, returning a new record."""
    properties = dict(feature.properties)
    for field, value in patch.properties.items():
        if value is None:
            properties.pop(field, None)
        else:
            properties[field] = value
    properties["last_seen"] = patch.last_seen

    return NodeFeature(
        properties=properties,
        geometry=patch.geometry or feature.geometry,
    )


# ---------------------------------------------------------------------------
# id assignment
# ---------------------------------------------------------------------------


def slugify(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:MAX_TEXT_LENGTH] or None


def unique_id(candidate: str, existing_ids: Iterable[str]) -> str:
    taken = set(existing_ids)
    final_id = candidate
    collision = 1
    while final_id in taken:
        collision += 1
        suffix = f"-{collision}"
        final_id = candidate[: MAX_TEXT_LENGTH - len(suffix)] + suffix
    return final_id


def assign_node_id(
    feature: NodeFeature,
    existing_ids: Iterable[str],
    index: int = 0,
    suffix_supplied: bool = False,
) -> NodeFeature:
    """Return `feature` with a unique `id` property.

    A client-supplied id is kept as-is unless `suffix_supplied` is set (used
    while bootstrapping from disk); callers decide how to treat a collision.
    Generated ids come from the slug of `node_name`, falling back to
    `node-<index + 1>`, and get a numeric suffix until unique.
    """
    supplied = feature.properties.get("id")
    if supplied and not suffix_supplied:
        return feature

    candidate = supplied or slugify(feature.properties.get("node_name")) or f"node-{index + 1}"
    node_id = unique_id(candidate, existing_ids)

    properties = {"id": node_id}
    properties.update((k, v) for k, v in feature.properties.items() if k != "id")
    return NodeFeature(properties=properties, geometry=feature.geometry)
