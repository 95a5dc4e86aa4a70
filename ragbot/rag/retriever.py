"""
Retriever module for knowledge base lookups at reply time.

Embeds the user message, queries ChromaDB for the top-K nearest documents and
formats them into a single system message for the completion request, along
with the title/source entries used later to repair links in the reply.

Retrieval never raises: any failure (collection resolution, embedding, query)
is logged and yields None, so a reply can always be generated without
knowledge.
"""

import asyncio
import inspect
import logging
import numbers
from typing import Any, Awaitable, Callable, List, Optional

from ..models.knowledge import KnowledgeContext, KnowledgeEntry

logger = logging.getLogger(__name__)

# Default number of documents to retrieve per query
DEFAULT_TOP_K = 5

# Character budget shared by all retrieved documents
MAX_RETRIEVED_CHARS = 1500

# Floor for the per-document share of MAX_RETRIEVED_CHARS
MIN_DOCUMENT_CHARS = 200

KNOWLEDGE_HEADER = "Knowledge base context:"

EmbedTexts = Callable[[List[str]], Awaitable[List[List[float]]]]


async def _call(func: Callable, *args, **kwargs) -> Any:
    """Call a Chroma client method, sync or async."""
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    result = await asyncio.to_thread(func, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def truncate(value: str, limit: int) -> str:
    """Cut value to at most `limit` characters, ending with '...' when cut."""
    if len(value) <= limit:
        return value
    return f"{value[:max(0, limit - 3)]}..."


def _first_batch(results: Any, key: str) -> List[Any]:
    batches = results.get(key) if results else None
    if not batches:
        return []
    return list(batches[0] or [])


class KnowledgeBaseRetriever:
    """Builds per-request knowledge context from a Chroma collection.

    The collection handle is resolved lazily and cached for the process.
    Concurrent callers share one in-flight resolution; a failed resolution is
    not cached, so the next request retries.

    Args:
        chroma_client: ChromaDB client (sync or async API).
        collection_name: Name of the knowledge base collection.
        embed_texts: Async callable mapping texts to embedding vectors.
        max_results: Number of nearest documents to request (K).
        max_characters: Character budget shared by all documents.
        embedding_function: Optional Chroma embedding function registered on
            the collection.
    """

    def __init__(
        self,
        chroma_client: Any,
        collection_name: str,
        embed_texts: EmbedTexts,
        max_results: int = DEFAULT_TOP_K,
        max_characters: int = MAX_RETRIEVED_CHARS,
        embedding_function: Any = None,
    ):
        self.chroma_client = chroma_client
        self.collection_name = collection_name
        self.embed_texts = embed_texts
        self.max_results = max_results or DEFAULT_TOP_K
        self.max_characters = max_characters or MAX_RETRIEVED_CHARS
        self.embedding_function = embedding_function

        self._collection = None
        self._collection_task: Optional[asyncio.Future] = None

    @property
    def per_document_limit(self) -> int:
        return max(MIN_DOCUMENT_CHARS, self.max_characters // max(1, self.max_results))

    async def _create_collection(self):
        kwargs = {"name": self.collection_name}
        if self.embedding_function is not None:
            kwargs["embedding_function"] = self.embedding_function
        return await _call(self.chroma_client.get_or_create_collection, **kwargs)

    async def resolve_collection(self):
        """Return the cached collection handle, resolving it on first use.

        Returns:
            The collection, or None if resolution failed (logged).
        """
        if self._collection is not None:
            return self._collection

        if self._collection_task is None:
            self._collection_task = asyncio.ensure_future(self._create_collection())
        task = self._collection_task

        try:
            collection = await asyncio.shield(task)
        except Exception as e:
            # Only the first waiter clears the cache, so a retry started
            # meanwhile is not discarded.
            if self._collection_task is task:
                self._collection_task = None
                logger.error(f"[KNOWLEDGE] Failed to resolve collection '{self.collection_name}': {e}")
            return None

        if self._collection_task is task:
            self._collection = collection
            self._collection_task = None
        return collection

    async def heartbeat(self) -> bool:
        """Ping the vector store. Failures are logged, never raised."""
        try:
            await _call(self.chroma_client.heartbeat)
            logger.info("[KNOWLEDGE] Chroma heartbeat succeeded")
            return True
        except Exception as e:
            logger.error(f"[KNOWLEDGE] Chroma heartbeat failed: {e}")
            return False

    async def warm_up(self) -> None:
        """Check liveness and resolve the collection ahead of the first request."""
        await self.heartbeat()
        if await self.resolve_collection() is not None:
            logger.info(f"[KNOWLEDGE] Collection '{self.collection_name}' ready")

    async def build_knowledge_context(self, conversation_id: str, query_text: str) -> Optional[KnowledgeContext]:
        """Retrieve knowledge relevant to query_text.

        Args:
            conversation_id: Conversation the lookup is made for (logging only).
            query_text: The user's message.

        Returns:
            KnowledgeContext with a system message and the {title, source}
            entries in result order, or None when nothing usable was found
            or retrieval failed.
        """
        collection = await self.resolve_collection()
        if collection is None:
            return None

        try:
            query_embeddings = await self.embed_texts([query_text])
        except Exception as e:
            logger.warning(f"[KNOWLEDGE] Embedding failed for {conversation_id}: {e}")
            return None

        if not query_embeddings:
            logger.warning(f"[KNOWLEDGE] Embedding returned no vectors for {conversation_id}")
            return None

        try:
            results = await _call(
                collection.query,
                query_embeddings=query_embeddings,
                n_results=self.max_results,
                include=["documents", "metadatas", "distances"],
            )

            documents = _first_batch(results, "documents")
            metadatas = _first_batch(results, "metadatas")
            distances = _first_batch(results, "distances")

            lines = []
            entries = []
            limit = self.per_document_limit

            for index, document in enumerate(documents):
                if not document:
                    continue

                metadata = (metadatas[index] if index < len(metadatas) else None) or {}
                title = metadata.get("title")
                if not isinstance(title, str):
                    title = f"snippet-{index + 1}"
                source = metadata.get("source")
                if not isinstance(source, str):
                    source = "unknown"
                distance = distances[index] if index < len(distances) else None

                entries.append(KnowledgeEntry(title=title, source=source))

                score = ""
                if isinstance(distance, numbers.Real) and not isinstance(distance, bool):
                    score = f" | score: {float(distance):.4f}"
                lines.append(f"- ({title} | source: {source}{score}) {truncate(document, limit)}")

            if not lines:
                logger.info(f"[KNOWLEDGE] No documents found for {conversation_id} in '{self.collection_name}'")
                return None

            logger.info(
                f"[KNOWLEDGE] Retrieved {len(lines)} documents for {conversation_id} "
                f"from '{self.collection_name}'"
            )
            message = {"role": "system", "content": KNOWLEDGE_HEADER + "\n" + "\n".join(lines)}
            return KnowledgeContext(message=message, entries=entries)

        except Exception as e:
            logger.error(f"[KNOWLEDGE] Query failed for {conversation_id} in '{self.collection_name}': {e}")
            return None
