from typing import Dict, List, Any, Optional
import json
import os
from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import VectorStore, InMemoryVectorStore
import structlog

from voice_relay.domain.models.session import KnowledgeChunk

logger = structlog.get_logger(__name__)


def _metadata_matcher(filter: Dict[str, Any]):
    def matches(doc: Document) -> bool:
        return all(doc.metadata.get(key) == value for key, value in filter.items())
    return matches


class VectorSearchClient:
    """Embedding + filtered nearest-neighbour search over a langchain VectorStore"""

    def __init__(self, embeddings: Embeddings, vector_store: VectorStore):
        self.embeddings = embeddings
        self.vector_store = vector_store

    async def embed(self, text: str) -> List[float]:
        return await self.embeddings.aembed_query(text)

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[KnowledgeChunk]:
        kwargs: Dict[str, Any] = {"k": top_k}
        if filter:
            # InMemoryVectorStore filters with a predicate, other stores take a dict
            if isinstance(self.vector_store, InMemoryVectorStore):
                kwargs["filter"] = _metadata_matcher(filter)
            else:
                kwargs["filter"] = filter

        docs = await self.vector_store.asimilarity_search_by_vector(vector, **kwargs)
        return [
            KnowledgeChunk(
                text=doc.page_content,
                embedding=doc.metadata.get("embedding"),
                score=doc.metadata.get("score"),
                metadata={k: v for k, v in doc.metadata.items() if k != "embedding"},
            )
            for doc in docs
        ]


async def load_knowledge_store(path: str, embeddings: Embeddings) -> InMemoryVectorStore:
    """Build an in-memory store from a JSON list of {agent_id, text, ...} records"""

    store = InMemoryVectorStore(embeddings)
    if not os.path.exists(path):
        logger.warning("Knowledge file not found, starting with an empty store", path=path)
        return store

    with open(path, "r") as f:
        records = json.load(f)

    docs = [
        Document(
            page_content=record["text"],
            metadata={k: v for k, v in record.items() if k != "text"},
        )
        for record in records
        if record.get("text")
    ]
    if docs:
        await store.aadd_documents(docs)
    logger.info("Knowledge store loaded", path=path, documents=len(docs))
    return store
