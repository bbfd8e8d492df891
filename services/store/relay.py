"""Redis pub/sub relay fanning document changes out across server processes."""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

import redis

from services.store.base import DocumentStore, StoredDocument
from services.store.codec import decode_document, encode_document
from shared.errors import TransientStoreError
from shared.utils import setup_logging

logger = setup_logging("change-relay")


class RedisChangeRelay:
    """Publish locally committed changes and replay changes committed elsewhere.

    Each process tags what it publishes with its own origin id and ignores its
    own messages; local listeners were already notified at commit time.
    """

    DEFAULT_CHANNEL = "liveclass:document-changes"

    def __init__(self, redis_url: str, channel: str | None = None, reconnect_delay: float = 1.0) -> None:
        self.redis = redis.Redis.from_url(redis_url, decode_responses=True)  # type: ignore[misc]
        self.channel = channel or self.DEFAULT_CHANNEL
        self.origin = uuid4().hex
        self.reconnect_delay = reconnect_delay
        self._store: DocumentStore | None = None
        self._pubsub: Any = None
        self._task: asyncio.Task | None = None
        logger.info(f"Change relay initialised on channel {self.channel}")

    def attach(self, store: DocumentStore) -> None:
        self._store = store
        store.attach_relay(self)

    def publish(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        payload = encode_document(
            {
                "origin": self.origin,
                "changes": [self._encode_change(path, stored) for path, stored in changed],
            }
        )
        try:
            self.redis.publish(self.channel, payload)
        except redis.RedisError as exc:
            # Local listeners already have the change; remote ones resync on reconnect
            logger.error(f"Failed to publish {len(changed)} change(s): {exc}")

    def handle_message(self, message: dict[str, Any] | None) -> int:
        """Dispatch one pub/sub message; returns the number of changes applied."""
        if not message or message.get("type") != "message" or self._store is None:
            return 0
        payload = decode_document(message["data"])
        if payload.get("origin") == self.origin:
            return 0
        changed = [self._decode_change(change) for change in payload.get("changes", [])]
        self._store.dispatch_remote(changed)
        return len(changed)

    async def start(self) -> None:
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    async def _listen(self) -> None:
        while True:
            try:
                message = await asyncio.to_thread(self._pubsub.get_message, timeout=1.0)
            except redis.RedisError as exc:
                logger.error(f"Change relay connection lost: {exc}")
                if self._store is not None:
                    self._store.fail_listeners(TransientStoreError(f"Change relay unavailable: {exc}"))
                await asyncio.sleep(self.reconnect_delay)
                continue
            try:
                self.handle_message(message)
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(f"Dropping malformed relay message: {exc}")

    @staticmethod
    def _encode_change(path: str, stored: StoredDocument | None) -> dict[str, Any]:
        if stored is None:
            return {"path": path, "document": None}
        return {
            "path": path,
            "document": {
                "data": stored.data,
                "createTime": stored.create_time,
                "updateTime": stored.update_time,
                "version": stored.version,
            },
        }

    @staticmethod
    def _decode_change(change: dict[str, Any]) -> tuple[str, StoredDocument | None]:
        document = change.get("document")
        if document is None:
            return change["path"], None
        return change["path"], StoredDocument(
            path=change["path"],
            data=document["data"],
            create_time=document["createTime"],
            update_time=document["updateTime"],
            version=document["version"],
        )
