"""
History Store Adapter backed by Redis.

Redis serves as both object storage (uploaded images, stored as data URIs) and
the document store (one JSON document per solved problem, indexed per owner).
Every insert publishes on the owner's channel so `watch` can push a fresh
snapshot to live subscribers.

Keys used:
- equations:doc:{id}                 → HistoryRecord JSON
- equations:owner:{owner_id}         → set of document ids
- equations:images:{owner_id}:{name} → image data URI
- equations:changes:{owner_id}       → pub/sub channel
"""

import json
import logging
import uuid
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from errors import PersistenceError
from inputs import ensure_supported_image, parse_data_uri
from schemas import HistoryRecord, SolveResult

logger = logging.getLogger(__name__)

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/jpg": "jpg"}


def sort_history(records: list[HistoryRecord]) -> list[HistoryRecord]:
    """Newest first; records with the same timestamp are ordered by id."""
    return sorted(records, key=lambda r: (-r.created_at, r.id))


class RedisHistoryStore:
    def __init__(self, client: redis.Redis, public_base_url: str, collection: str = "equations"):
        self._client = client
        self.public_base_url = public_base_url.rstrip("/")
        self.collection = collection

    @classmethod
    async def connect(cls, redis_url: str, public_base_url: str) -> "RedisHistoryStore":
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        # Test connection
        await client.ping()
        logger.info("History store connected to Redis")
        return cls(client, public_base_url)

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def close(self) -> None:
        await self._client.aclose()

    # --- keys ---------------------------------------------------------------

    def _doc_key(self, doc_id: str) -> str:
        return f"{self.collection}:doc:{doc_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.collection}:owner:{owner_id}"

    def _image_key(self, owner_id: str, name: str) -> str:
        return f"{self.collection}:images:{owner_id}:{name}"

    def _channel(self, owner_id: str) -> str:
        return f"{self.collection}:changes:{owner_id}"

    async def _server_time(self) -> float:
        seconds, micros = await self._client.time()
        return int(seconds) + int(micros) / 1_000_000

    # --- object storage -----------------------------------------------------

    async def upload_image(self, owner_id: str, data_uri: str) -> str:
        """Store an image under the owner's namespace; returns its URL."""
        mime, _ = parse_data_uri(data_uri)
        ensure_supported_image(mime)
        name = f"{int(await self._server_time() * 1000)}-{uuid.uuid4().hex[:8]}.{_EXTENSIONS[mime]}"
        try:
            await self._client.set(self._image_key(owner_id, name), data_uri)
        except redis.RedisError as e:
            raise PersistenceError() from e
        return f"{self.public_base_url}/v1/images/{owner_id}/{name}"

    async def get_image(self, owner_id: str, name: str) -> Optional[str]:
        return await self._client.get(self._image_key(owner_id, name))

    # --- documents ----------------------------------------------------------

    async def add_record(
        self,
        owner_id: str,
        result: SolveResult,
        image_url: Optional[str] = None
    ) -> HistoryRecord:
        try:
            record = HistoryRecord(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                raw_text=result.raw_text,
                corrected_text=result.corrected_text,
                result_lines=result.result_lines,
                explanation_steps=result.explanation_steps,
                graph=result.graph,
                image_url=image_url,
                created_at=await self._server_time(),
            )
            pipe = self._client.pipeline()
            pipe.set(self._doc_key(record.id), record.model_dump_json())
            pipe.sadd(self._owner_key(owner_id), record.id)
            pipe.publish(self._channel(owner_id), json.dumps({"type": "added", "id": record.id}))
            await pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError() from e
        return record

    async def list_for_owner(self, owner_id: str) -> list[HistoryRecord]:
        ids = await self._client.smembers(self._owner_key(owner_id))
        if not ids:
            return []
        docs = await self._client.mget([self._doc_key(doc_id) for doc_id in ids])
        records = [HistoryRecord.model_validate_json(doc) for doc in docs if doc]
        return sort_history(records)

    async def watch(self, owner_id: str) -> AsyncIterator[list[HistoryRecord]]:
        """
        Yield the current snapshot, then a new one after every change.
        Closing the generator tears the subscription down.
        """
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel(owner_id))
        logger.info(f"[History] Watching {owner_id}")
        try:
            yield await self.list_for_owner(owner_id)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield await self.list_for_owner(owner_id)
        finally:
            await pubsub.unsubscribe(self._channel(owner_id))
            await pubsub.aclose()
            logger.info(f"[History] Stopped watching {owner_id}")
