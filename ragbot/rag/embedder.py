"""
Embedder module for generating OpenAI embeddings.

Provides the default pluggable embedding function used by the retriever at
query time, plus a ChromaDB embedding function wrapper so documents added
through Chroma itself are embedded with the same model.

Every returned vector is validated: it must be a non-empty list of finite
numbers. A single malformed vector rejects the whole request.
"""

import logging
import math
import os
from typing import Any, Dict, List, Optional, Sequence

from chromadb.api.types import Documents, EmbeddingFunction, Embeddings
from openai import AsyncOpenAI, OpenAI

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

EmbeddingVector = List[float]


def is_embedding_vector(value: Any) -> bool:
    """Check that value is a non-empty sequence of finite real numbers."""
    if not isinstance(value, (list, tuple)) or len(value) == 0:
        return False
    for element in value:
        if isinstance(element, bool) or not isinstance(element, (int, float)):
            return False
        if not math.isfinite(element):
            return False
    return True


def _validated_embeddings(data: Sequence[Any]) -> List[EmbeddingVector]:
    embeddings = []
    for index, item in enumerate(data):
        embedding = getattr(item, "embedding", None)
        if not is_embedding_vector(embedding):
            raise ValueError(f"Invalid embedding vector received from OpenAI at index {index}")
        embeddings.append(list(embedding))
    return embeddings


class OpenAIEmbedder:
    """Async embedding function backed by the OpenAI embeddings endpoint.

    Instances are callables: ``await embedder(["text"]) -> [[0.1, ...]]``.

    Args:
        client: AsyncOpenAI client (shared with the completion calls).
        model: Embedding model name.
    """

    def __init__(self, client: AsyncOpenAI, model: str = DEFAULT_EMBEDDING_MODEL):
        self.client = client
        self.model = model or DEFAULT_EMBEDDING_MODEL

    async def __call__(self, texts: List[str]) -> List[EmbeddingVector]:
        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
        )
        embeddings = _validated_embeddings(response.data)

        usage = getattr(response, "usage", None)
        logger.debug(
            f"[EMBEDDER] Generated {len(embeddings)} embeddings ({self.model}), "
            f"usage: {getattr(usage, 'total_tokens', None)} tokens"
        )
        return embeddings


class ChromaEmbeddingFunction(EmbeddingFunction[Documents]):
    """ChromaDB embedding function that calls OpenAI synchronously.

    Registered on the collection so `collection.add(documents=...)` and
    `collection.query(query_texts=...)` use the same model as the retriever.
    The OpenAI client is created on first use.
    """

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL, api_key: Optional[str] = None, client: Optional[OpenAI] = None):
        self.model = model or DEFAULT_EMBEDDING_MODEL
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise ValueError("OPENAI_API_KEY is required for ChromaEmbeddingFunction")
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def __call__(self, input: Documents) -> Embeddings:
        response = self._get_client().embeddings.create(model=self.model, input=list(input))
        return _validated_embeddings(response.data)

    @staticmethod
    def name() -> str:
        return "openai-api"

    def get_config(self) -> Dict[str, Any]:
        return {"model": self.model}

    @staticmethod
    def build_from_config(config: Dict[str, Any]) -> "ChromaEmbeddingFunction":
        model = config.get("model") if isinstance(config.get("model"), str) else None
        return ChromaEmbeddingFunction(model=model or DEFAULT_EMBEDDING_MODEL, api_key=os.environ.get("OPENAI_API_KEY"))

    def default_space(self) -> str:
        return "cosine"

    def supported_spaces(self) -> List[str]:
        return ["cosine", "l2", "ip"]
