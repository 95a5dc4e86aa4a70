"""
Reply orchestration: conversation history + knowledge base + OpenAI completion.

`ReplyOrchestrator.generate_reply` runs one turn:

    1. append the user message to the stored history and trim it
    2. snapshot the history into a request-local copy
    3. splice the retrieved knowledge message right before the user message,
       dropping it again if it pushes the request over the token limit
    4. trim the request copy, account tokens, call the completion API
    5. normalize links in the reply, store it, trim the stored history

The stored history and the request copy diverge on purpose: knowledge is
re-retrieved every turn and never persisted, while the user/assistant
exchange is.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from . import config
from .conversation_history import ChatMessage, ConversationHistory
from .models.knowledge import KnowledgeContext
from .rag.retriever import KnowledgeBaseRetriever
from .utils.content_normalizer import normalize_assistant_reply

logger = logging.getLogger(__name__)


class EmptyCompletionError(RuntimeError):
    """The completion response carried no textual content."""


@dataclass
class ReplyResult:
    """Normalized reply text plus the token accounting for the turn."""
    response: str
    tokens: Dict[str, Any] = field(default_factory=dict)


def _contains(messages: List[ChatMessage], message: ChatMessage) -> bool:
    return any(m is message for m in messages)


def _remove(messages: List[ChatMessage], message: ChatMessage) -> None:
    for index, m in enumerate(messages):
        if m is message:
            del messages[index]
            return


class ReplyOrchestrator:
    """Generates replies for WhatsApp conversations.

    Args:
        client: AsyncOpenAI client (or any object with `chat.completions.create`).
        model: Chat completion model.
        history: Conversation history store owned by this orchestrator.
        knowledge_base: Retriever used to build per-request knowledge context.
    """

    def __init__(self, client: Any, model: str, history: ConversationHistory, knowledge_base: KnowledgeBaseRetriever):
        self.client = client
        self.model = model
        self.history = history
        self.knowledge_base = knowledge_base
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def token_limit(self) -> int:
        return self.history.token_limit

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def generate_reply(self, conversation_id: str, message: str) -> ReplyResult:
        """Generate the assistant reply for one inbound message.

        Turns for the same conversation are serialized; different
        conversations run concurrently.

        Raises:
            openai.OpenAIError: The completion call failed (the user message
                stays in history).
            EmptyCompletionError: The completion had no content.
        """
        async with self._lock_for(conversation_id):
            return await self._generate_reply(conversation_id, message)

    async def _retrieve(self, conversation_id: str, message: str) -> Optional[KnowledgeContext]:
        try:
            return await self.knowledge_base.build_knowledge_context(conversation_id, message)
        except Exception as e:
            logger.error(f"[OpenAI] Knowledge retrieval raised for {conversation_id}: {e}")
            return None

    async def _generate_reply(self, conversation_id: str, message: str) -> ReplyResult:
        user_message = {"role": "user", "content": message}
        self.history.add_message(conversation_id, user_message)

        # Retrieval runs while the stored history is trimmed and copied
        retrieval = asyncio.ensure_future(self._retrieve(conversation_id, message))

        messages = self.history.get_messages(conversation_id)
        trimmed_before_call = self.history.trim_context(messages)
        request_messages = list(messages)

        knowledge = await retrieval
        knowledge_entries = knowledge.entries if knowledge else []
        knowledge_applied = False

        # Knowledge goes right before the user turn; if trimming already
        # evicted the user message there is no such slot.
        if knowledge and request_messages[-1] is user_message:
            request_messages.insert(len(request_messages) - 1, knowledge.message)
            knowledge_applied = True

            if self.history.count_tokens(request_messages) > self.token_limit:
                _remove(request_messages, knowledge.message)
                knowledge_applied = False
                logger.warning(f"[OpenAI] Knowledge context dropped for {conversation_id}: reason=token_limit")

        trimmed_request = self.history.trim_context(request_messages)
        if knowledge_applied:
            knowledge_applied = _contains(request_messages, knowledge.message)

        request_tokens = self.history.count_tokens(request_messages)
        knowledge_tokens = self.history.count_tokens([knowledge.message]) if knowledge_applied else 0
        user_tokens = self.history.count_tokens([user_message]) if _contains(request_messages, user_message) else 0
        conversation_tokens = max(0, request_tokens - knowledge_tokens - user_tokens)

        logger.info(
            f"[OpenAI] Token breakdown for {conversation_id}: requestTokens={request_tokens} "
            f"conversationTokens={conversation_tokens} knowledgeTokens={knowledge_tokens} "
            f"userTokens={user_tokens} tokenLimit={self.token_limit}"
        )

        started_at = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=request_messages,
            )
        except Exception as e:
            logger.error(f"[OpenAI] Completion request failed for {conversation_id}: {e}")
            raise

        choices = getattr(response, "choices", None) or []
        response_message = getattr(choices[0], "message", None) if choices else None
        content = getattr(response_message, "content", None)
        usage = getattr(response, "usage", None)
        if not isinstance(content, str) or not content:
            logger.error(f"[OpenAI] Empty response for {conversation_id}, usage: {usage}")
            raise EmptyCompletionError("No content returned from OpenAI response")

        normalized = normalize_assistant_reply(content, knowledge_entries)

        self.history.add_message(conversation_id, {"role": "assistant", "content": normalized})
        stored = self.history.get_messages(conversation_id)
        trimmed_after_call = self.history.trim_context(stored)

        tokens = {
            "conversationId": conversation_id,
            "totalTokens": self.history.count_tokens(stored),
            "durationMs": int((time.monotonic() - started_at) * 1000),
            "usageTokens": getattr(usage, "total_tokens", None),
            "trimmed": trimmed_before_call or trimmed_request or trimmed_after_call,
            "knowledgeApplied": knowledge_applied,
            "requestTokens": request_tokens,
            "conversationTokens": conversation_tokens,
            "knowledgeTokens": knowledge_tokens,
            "userTokens": user_tokens,
            "tokenLimit": self.token_limit,
        }
        logger.info(f"[OpenAI] Tokens: {tokens}")

        return ReplyResult(response=normalized, tokens=tokens)

    def reset_conversation(self, conversation_id: str) -> None:
        self.history.reset_conversation(conversation_id)

    def get_conversation_history(self, conversation_id: str) -> List[ChatMessage]:
        return self.history.get_messages(conversation_id)


def create_orchestrator(
    client: Any = None,
    chroma_client: Any = None,
    tokenizer=None,
    use_fake_clients: Optional[bool] = None,
) -> ReplyOrchestrator:
    """Wire a ReplyOrchestrator from config.

    Collaborators not passed in are built from config: AsyncOpenAI, the
    Chroma client for CHROMA_MODE and a tiktoken encoding for OPENAI_MODEL.
    With fake clients enabled, in-process fakes replace OpenAI and Chroma.
    """
    from .rag.chunk_store import FakeChromaClient, get_chroma_client
    from .rag.embedder import ChromaEmbeddingFunction, OpenAIEmbedder

    if use_fake_clients is None:
        use_fake_clients = config.USE_FAKE_CLIENTS

    embedding_function = None
    if use_fake_clients:
        from .clients.openai_fake import FakeOpenAIClient

        client = client or FakeOpenAIClient()
        chroma_client = chroma_client or FakeChromaClient()
    else:
        client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        chroma_client = chroma_client or get_chroma_client()
        embedding_function = ChromaEmbeddingFunction(model=config.OPENAI_EMBEDDING_MODEL, api_key=config.OPENAI_API_KEY)

    history = ConversationHistory(
        system_prompt=config.SYSTEM_PROMPT,
        token_limit=config.OPENAI_MAX_CONTEXT_TOKENS,
        model=config.OPENAI_MODEL,
        tokenizer=tokenizer,
    )
    knowledge_base = KnowledgeBaseRetriever(
        chroma_client=chroma_client,
        collection_name=config.CHROMA_COLLECTION,
        embed_texts=OpenAIEmbedder(client, config.OPENAI_EMBEDDING_MODEL),
        max_results=config.CHROMA_MAX_RESULTS,
        max_characters=config.CHROMA_MAX_CHARACTERS,
        embedding_function=embedding_function,
    )

    logger.info(
        f"[OpenAI] Orchestrator ready: model={config.OPENAI_MODEL} "
        f"tokenLimit={config.OPENAI_MAX_CONTEXT_TOKENS} collection={config.CHROMA_COLLECTION} "
        f"fake={use_fake_clients}"
    )
    return ReplyOrchestrator(client=client, model=config.OPENAI_MODEL, history=history, knowledge_base=knowledge_base)
