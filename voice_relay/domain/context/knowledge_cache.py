from typing import Dict, List, Any, Optional, Protocol
import asyncio
import structlog

from voice_relay.domain.errors import UpstreamError
from voice_relay.domain.models.session import KnowledgeChunk
from .memory.cache_memory_store import CacheMemoryStore

logger = structlog.get_logger(__name__)

MAX_TOP_K = 5000


class VectorSearchClient(Protocol):
    """Embedding + nearest-neighbour search collaborator"""

    async def embed(self, text: str) -> List[float]:
        ...

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[KnowledgeChunk]:
        ...


def normalize_query(text: str) -> str:
    """Case-fold, trim and collapse whitespace"""
    return " ".join((text or "").casefold().split())


class KnowledgeCache:
    """Memoizes embeddings and per-agent knowledge chunks.

    Entries are immutable once written. Concurrent misses for the same
    normalized text share one upstream embedding call.
    """

    def __init__(
        self,
        vector_client: VectorSearchClient,
        store: Optional[CacheMemoryStore] = None,
        probe_query: str = "general information",
        top_k: int = 5,
        embedding_timeout: float = 10.0,
        query_timeout: float = 10.0,
    ):
        self.vector_client = vector_client
        self.store = store or CacheMemoryStore()
        self.probe_query = probe_query
        self.top_k = max(1, min(top_k, MAX_TOP_K))
        self.embedding_timeout = embedding_timeout
        self.query_timeout = query_timeout
        self._inflight: Dict[str, asyncio.Task] = {}

    async def embed(self, text: str) -> List[float]:
        """Embed text, hitting the upstream service at most once per normalized key"""

        key = normalize_query(text)
        cached = await self.store.get(f"embedding:{key}")
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_embedding(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._embedding_done(k, t))

        return await asyncio.shield(task)

    def _embedding_done(self, key: str, task: asyncio.Task):
        self._inflight.pop(key, None)
        # Waiters may all have been cancelled; the failure is still consumed here
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Embedding fetch failed", key=key, error=str(task.exception()))

    async def _fetch_embedding(self, key: str) -> List[float]:
        try:
            vector = await asyncio.wait_for(
                self.vector_client.embed(key),
                timeout=self.embedding_timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError("Embedding request timed out", service="embedding") from e
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"Embedding request failed: {e}", service="embedding") from e

        return await self.store.set_if_absent(f"embedding:{key}", vector)

    async def prefetch_knowledge(self, agent_id: str) -> List[KnowledgeChunk]:
        """Retrieve the agent's knowledge chunks once, ahead of the first turn.

        Failures degrade to an empty list and are not cached.
        """

        cache_key = f"chunks:{agent_id}"
        cached = await self.store.get(cache_key)
        if cached is not None:
            logger.debug("Knowledge cache hit", agent_id=agent_id, chunks=len(cached))
            return list(cached)

        try:
            vector = await self.embed(self.probe_query)
            chunks = await asyncio.wait_for(
                self.vector_client.query(vector, self.top_k, {"agent_id": agent_id}),
                timeout=self.query_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Knowledge query timed out", agent_id=agent_id)
            return []
        except Exception as e:
            logger.warning("Knowledge prefetch failed", agent_id=agent_id, error=str(e))
            return []

        chunks = await self.store.set_if_absent(cache_key, list(chunks))
        logger.info("Knowledge prefetched", agent_id=agent_id, chunks=len(chunks))
        return list(chunks)

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.get_stats()
        stats["inflight_embeddings"] = len(self._inflight)
        return stats
