"""
In-memory conversation history with token-budget enforcement.

Each conversation (keyed by the sender's WhatsApp address) is a list of
OpenAI chat messages whose first element is always the system prompt.
History lives only for the lifetime of the process.
"""
import logging
from typing import Any, Dict, List, Optional

import tiktoken

logger = logging.getLogger(__name__)

# Used when tiktoken does not know the configured model
FALLBACK_ENCODING = "o200k_base"

ChatMessage = Dict[str, Any]


def get_tokenizer(model: Optional[str] = None):
    """Return the tiktoken encoding for model, or the fallback encoding."""
    if model:
        try:
            return tiktoken.encoding_for_model(model)
        except KeyError:
            logger.warning(f"[HISTORY] No tokenizer registered for {model}, using {FALLBACK_ENCODING}")
    return tiktoken.get_encoding(FALLBACK_ENCODING)


class ConversationHistory:
    """Owns the per-conversation message lists.

    Args:
        system_prompt: Content of the system message seeding every conversation.
        token_limit: Maximum total tokens allowed for a message set.
        model: Model name used to pick a tiktoken encoding.
        tokenizer: Any object with `encode(text)`; overrides `model`.
    """

    def __init__(self, system_prompt: str, token_limit: int, model: Optional[str] = None, tokenizer=None):
        self.system_prompt = system_prompt
        self.token_limit = token_limit
        self.tokenizer = tokenizer if tokenizer is not None else get_tokenizer(model)
        self._conversations: Dict[str, List[ChatMessage]] = {}

    def _system_message(self) -> ChatMessage:
        return {"role": "system", "content": self.system_prompt}

    def ensure_conversation(self, conversation_id: str) -> List[ChatMessage]:
        """Return the stored list for conversation_id, creating it if absent."""
        messages = self._conversations.get(conversation_id)
        if messages is None:
            messages = [self._system_message()]
            self._conversations[conversation_id] = messages
        return messages

    def get_messages(self, conversation_id: str) -> List[ChatMessage]:
        return self.ensure_conversation(conversation_id)

    def add_message(self, conversation_id: str, message: ChatMessage) -> None:
        self.ensure_conversation(conversation_id).append(message)

    def reset_conversation(self, conversation_id: str) -> None:
        """Replace the conversation with a fresh one holding only the system prompt."""
        self._conversations[conversation_id] = [self._system_message()]
        logger.info(f"[HISTORY] Conversation reset for {conversation_id}")

    def conversation_ids(self) -> List[str]:
        return list(self._conversations)

    def count_tokens(self, messages: List[ChatMessage]) -> int:
        """Sum the encoded length of every message's text content.

        Multi-part content counts only its text parts.
        """
        total = 0
        for message in messages:
            content = message.get("content")
            if isinstance(content, str):
                total += len(self.tokenizer.encode(content))
            elif isinstance(content, list):
                for part in content:
                    if isinstance(part, dict) and part.get("type") == "text":
                        total += len(self.tokenizer.encode(part.get("text") or ""))
        return total

    def trim_context(self, messages: List[ChatMessage]) -> bool:
        """Evict the oldest non-system messages until under the token limit.

        Mutates `messages` in place. The system prompt at index 0 is never
        removed, even if it alone exceeds the limit.

        Returns:
            True if at least one message was removed.
        """
        trimmed = False
        total_tokens = self.count_tokens(messages)

        while total_tokens > self.token_limit and len(messages) > 1:
            del messages[1]
            trimmed = True
            total_tokens = self.count_tokens(messages)

        if trimmed:
            logger.warning(
                f"[HISTORY] Context trimmed: tokenLimit={self.token_limit} "
                f"totalTokens={total_tokens} conversationLength={len(messages)}"
            )
        return trimmed
