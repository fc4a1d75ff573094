import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from config import Settings
from models import NodeFeature
from node_schema import (
    NodeValidationError,
    apply_patch,
    assign_node_id,
    parse_heartbeat,
    parse_registration,
)
from services.broadcast import SubscriberHub
from services.node_store import NodeStore, is_online
from services.persistence import PersistenceError, load_bootstrap, write_collection_atomic
from services.write_queue import WriteSerializer

logger = logging.getLogger("agrinet.registry")


class NodeNotFoundError(LookupError):
    pass


class NodeConflictError(Exception):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeRegistry:
    """
    Owns the node store and everything that may change it.

    Writes (register / heartbeat / delete) run through the WriteSerializer:
    validation, store mutation and the disk write happen inside one queued
    operation, so two registrations cannot claim the same generated id and a
    heartbeat cannot lose a concurrent update. Reads go straight to the
    store.

    If persisting fails the in-memory change is kept and PersistenceError is
    raised; memory and disk then disagree until the next successful write.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[NodeStore] = None,
        hub: Optional[SubscriberHub] = None,
        serializer: Optional[WriteSerializer] = None,
        clock: Callable[[], datetime] = utc_now,
        writer: Callable[[str, Dict[str, Any]], None] = write_collection_atomic,
    ):
        self.settings = settings
        self.store = store if store is not None else NodeStore()
        self.hub = hub if hub is not None else SubscriberHub()
        self.serializer = serializer if serializer is not None else WriteSerializer()
        self.clock = clock
        self._writer = writer

    # ------------------------------------------------------------------ reads

    def snapshot(self) -> Dict[str, Any]:
        return self.store.snapshot(self.clock())

    def get(self, node_id: str) -> Dict[str, Any]:
        feature = self.store.get(node_id)
        if feature is None:
            raise NodeNotFoundError(node_id)
        return self._present(feature)

    def _present(self, feature: NodeFeature) -> Dict[str, Any]:
        return feature.to_geojson(is_online=is_online(feature, self.clock()))

    # -------------------------------------------------------------- bootstrap

    async def bootstrap(self) -> Optional[str]:
        """Load the data file, else the static seed, else start empty."""
        candidates = [self.settings.data_file, self.settings.seed_file]
        raw_features, source = await asyncio.to_thread(load_bootstrap, candidates)

        store = NodeStore()
        now = self.clock()
        for index, raw in enumerate(raw_features):
            try:
                feature = parse_registration(raw, now)
            except NodeValidationError as e:
                logger.warning("Skipping feature %d while loading %s: %s", index, source, e)
                continue
            feature = assign_node_id(feature, store.ids(), index, suffix_supplied=True)
            store.upsert(feature)

        self.store.replace_all(store.features())
        if source:
            logger.info("Loaded %d node(s) from %s", len(self.store), source)
        else:
            logger.info("No registry data found; starting with an empty node set")
        return source

    # ----------------------------------------------------------------- writes

    async def register(self, body: Any) -> Dict[str, Any]:
        async def operation():
            feature = parse_registration(body, self.clock())
            if feature.node_id:
                if feature.node_id in self.store:
                    raise NodeConflictError(feature.node_id)
            else:
                feature = assign_node_id(feature, self.store.ids(), len(self.store))

            self.store.upsert(feature)
            await self._persist()
            logger.info("Registered node %s", feature.node_id)
            return self._present(feature)

        return await self.serializer.run(operation, "register")

    async def heartbeat(self, node_id: str, body: Any) -> Dict[str, Any]:
        async def operation():
            existing = self.store.get(node_id)
            if existing is None:
                raise NodeNotFoundError(node_id)

            patch = parse_heartbeat(body, self.clock())
            updated = apply_patch(existing, patch)

            self.store.upsert(updated)
            await self._persist()
            logger.info("Heartbeat from node %s (last_seen=%s)", node_id, updated.last_seen)
            return self._present(updated)

        return await self.serializer.run(operation, "heartbeat")

    async def delete(self, node_id: str) -> None:
        async def operation():
            if not self.store.remove(node_id):
                raise NodeNotFoundError(node_id)
            await self._persist()
            logger.info("Deleted node %s", node_id)

        await self.serializer.run(operation, "delete")

    async def _persist(self) -> None:
        document = self.store.to_collection()
        try:
            await asyncio.to_thread(self._writer, self.settings.data_file, document)
        except (OSError, ValueError) as e:
            logger.exception("Failed to persist nodes to %s", self.settings.data_file)
            raise PersistenceError(str(e)) from e

    # -------------------------------------------------------------- broadcast

    def broadcast(self) -> int:
        """Push the current snapshot to every stream subscriber."""
        if not len(self.hub):
            return 0
        return self.hub.broadcast(self.snapshot())
