"""
ChromaDB client management for the knowledge base.

Builds the Chroma client selected by CHROMA_MODE and provides an in-process
fake store used when USE_FAKE_CLIENTS is enabled and in tests.
"""

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from .. import config

logger = logging.getLogger(__name__)


def get_chroma_client(mode: str = None):
    """Get a ChromaDB client for the configured deployment.

    Args:
        mode: "cloud", "http" or "persistent". Defaults to config.CHROMA_MODE.

    Returns:
        ChromaDB client instance (CloudClient, HttpClient or PersistentClient).
    """
    import chromadb

    mode = (mode or config.CHROMA_MODE).lower()

    if mode == "cloud":
        logger.info(f"[CHUNK_STORE] Using Chroma Cloud (tenant={config.CHROMA_TENANT}, database={config.CHROMA_DATABASE})")
        return chromadb.CloudClient(
            tenant=config.CHROMA_TENANT,
            database=config.CHROMA_DATABASE,
            api_key=config.CHROMA_API_KEY,
        )
    if mode == "http":
        logger.info(f"[CHUNK_STORE] Using Chroma server at {config.CHROMA_HOST}:{config.CHROMA_PORT}")
        return chromadb.HttpClient(host=config.CHROMA_HOST, port=config.CHROMA_PORT)
    if mode == "persistent":
        os.makedirs(config.CHROMA_PERSIST_DIR, exist_ok=True)
        logger.info(f"[CHUNK_STORE] Using persistent Chroma at {config.CHROMA_PERSIST_DIR}")
        return chromadb.PersistentClient(path=config.CHROMA_PERSIST_DIR)

    raise ValueError(f"Unknown CHROMA_MODE: {mode!r} (expected cloud, http or persistent)")


class FakeCollection:
    """Collection stand-in returning fixed query results.

    Results use Chroma's shape: one inner list per query embedding.
    """

    def __init__(
        self,
        name: str,
        documents: Optional[List[Optional[str]]] = None,
        metadatas: Optional[List[Optional[Dict[str, Any]]]] = None,
        distances: Optional[List[Optional[float]]] = None,
        on_query: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.name = name
        self.documents = documents or []
        self.metadatas = metadatas or []
        self.distances = distances or []
        self.on_query = on_query
        self.queries: List[Dict[str, Any]] = []

    def query(self, query_embeddings=None, query_texts=None, n_results: int = 10, include=None, **kwargs) -> Dict[str, Any]:
        args = {
            "query_embeddings": query_embeddings,
            "query_texts": query_texts,
            "n_results": n_results,
            "include": include,
        }
        self.queries.append(args)
        if self.on_query:
            self.on_query(args)

        return {
            "ids": [[f"doc-{i + 1}" for i in range(len(self.documents[:n_results]))]],
            "documents": [self.documents[:n_results]],
            "metadatas": [self.metadatas[:n_results]],
            "distances": [self.distances[:n_results]],
        }


class FakeChromaClient:
    """In-process Chroma client stand-in with a single fake collection."""

    def __init__(self, documents=None, metadatas=None, distances=None, on_query=None):
        self._collection_args = dict(documents=documents, metadatas=metadatas, distances=distances, on_query=on_query)
        self.collections: Dict[str, FakeCollection] = {}
        self.resolve_calls = 0

    def heartbeat(self) -> int:
        return time.time_ns()

    def get_or_create_collection(self, name: str, embedding_function=None, metadata=None, **kwargs) -> FakeCollection:
        self.resolve_calls += 1
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, **self._collection_args)
        return self.collections[name]
