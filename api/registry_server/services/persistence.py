import os
import json
import logging
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("agrinet.registry")


class PersistenceError(RuntimeError):
    """Writing the node collection to disk failed."""


def write_collection_atomic(path: str, document: Dict[str, Any]) -> None:
    """
    Replace `path` with `document` as pretty-printed JSON.

    The document is written to a temporary file in the same directory,
    flushed to disk and renamed over the target, so readers only ever see the
    previous complete snapshot or the new one. The temporary file is removed
    if anything fails.

    Blocking; the registry calls it through asyncio.to_thread.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".nodes-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, ensure_ascii=False, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def read_collection(path: str) -> Optional[List[Any]]:
    """
    Return the `features` list of the FeatureCollection at `path`.

    Returns None when the file is missing, unreadable, not JSON or not a
    FeatureCollection, so the caller can fall back to the next candidate.
    """
    if not os.path.isfile(path):
        logger.debug("[bootstrap] %s not found", path)
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("[bootstrap] could not read %s: %s", path, e)
        return None

    if not isinstance(document, dict) or document.get("type") != "FeatureCollection":
        logger.warning("[bootstrap] %s is not a FeatureCollection", path)
        return None
    features = document.get("features")
    if not isinstance(features, list):
        logger.warning("[bootstrap] %s has no features list", path)
        return None
    return features


def load_bootstrap(candidates: Sequence[str]) -> Tuple[List[Any], Optional[str]]:
    """Features from the first readable candidate file, and which file that was."""
    for path in candidates:
        if not path:
            continue
        features = read_collection(path)
        if features is not None:
            return features, path
    return [], None
