#!/usr/bin/env python3
"""
Tests for reply orchestration: history, knowledge splicing, token budget,
failure handling and link normalization
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ragbot.clients.openai_fake import FakeOpenAIClient
from ragbot.conversation_history import ConversationHistory
from ragbot.openai_agent import EmptyCompletionError, ReplyOrchestrator
from ragbot.rag.chunk_store import FakeChromaClient
from ragbot.rag.retriever import KnowledgeBaseRetriever

CONVERSATION = "whatsapp:+15550001"


class CharTokenizer:
    def encode(self, text):
        return list(text)


async def fixed_embedding(texts):
    return [[0.1, 0.2, 0.3] for _ in texts]


def completion(content, total_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(role="assistant", content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def scripted_client(*contents):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=[completion(c) for c in contents])
    return client


def make_orchestrator(client=None, chroma_client=None, token_limit=1000, system_prompt="You are helpful"):
    history = ConversationHistory(system_prompt=system_prompt, token_limit=token_limit, tokenizer=CharTokenizer())
    knowledge_base = KnowledgeBaseRetriever(
        chroma_client=chroma_client or FakeChromaClient(),
        collection_name="test-collection",
        embed_texts=fixed_embedding,
    )
    return ReplyOrchestrator(
        client=client or FakeOpenAIClient(),
        model="gpt-4o-mini",
        history=history,
        knowledge_base=knowledge_base,
    )


def workshop_store():
    return FakeChromaClient(
        documents=["Hands and Fire workshop details"],
        metadatas=[{"title": "workshops", "source": "https://kb.test/workshops"}],
        distances=[0.12],
    )


def test_generate_reply_returns_completion_and_updates_history():
    orchestrator = make_orchestrator()

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    assert result.response == "[fake-openai] Hello"
    history = orchestrator.get_conversation_history(CONVERSATION)
    assert [m["role"] for m in history] == ["system", "user", "assistant"]
    assert history[-1]["content"] == "[fake-openai] Hello"
    assert result.tokens["knowledgeApplied"] is False
    assert result.tokens["usageTokens"] == len("Hello") * 2


def test_knowledge_is_spliced_before_the_user_message():
    client = FakeOpenAIClient()
    orchestrator = make_orchestrator(client=client, chroma_client=workshop_store())

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "Tell me about workshops"))

    request = client.chat.completions.calls[0]["messages"]
    assert request[-1] == {"role": "user", "content": "Tell me about workshops"}
    assert request[-2]["role"] == "system"
    assert request[-2]["content"].startswith("Knowledge base context:")
    assert request[0] == {"role": "system", "content": "You are helpful"}
    assert result.tokens["knowledgeApplied"] is True
    assert result.tokens["knowledgeTokens"] == len(request[-2]["content"])

    # Knowledge never persists in the stored conversation
    stored = orchestrator.get_conversation_history(CONVERSATION)
    assert not any("Knowledge base context" in m["content"] for m in stored)


def test_knowledge_is_dropped_when_it_exceeds_the_budget():
    client = FakeOpenAIClient()
    orchestrator = make_orchestrator(client=client, chroma_client=workshop_store(), token_limit=50, system_prompt="sys")

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    request = client.chat.completions.calls[0]["messages"]
    assert request == [{"role": "system", "content": "sys"}, {"role": "user", "content": "Hello"}]
    assert result.tokens["knowledgeApplied"] is False
    assert result.tokens["knowledgeTokens"] == 0
    assert result.tokens["requestTokens"] == 8
    assert result.tokens["userTokens"] == 5
    assert result.tokens["conversationTokens"] == 3


def test_knowledge_is_sacrificed_before_conversation_turns():
    client = FakeOpenAIClient()
    orchestrator = make_orchestrator(client=client, chroma_client=workshop_store(), token_limit=60, system_prompt="sys")

    asyncio.run(orchestrator.generate_reply(CONVERSATION, "first"))
    asyncio.run(orchestrator.generate_reply(CONVERSATION, "second"))

    request = client.chat.completions.calls[1]["messages"]
    assert [m["content"] for m in request] == ["sys", "first", "[fake-openai] first", "second"]


def test_oversized_user_message_gets_no_knowledge():
    client = FakeOpenAIClient()
    orchestrator = make_orchestrator(client=client, chroma_client=workshop_store(), token_limit=20, system_prompt="sys")

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "x" * 30))

    # The user turn was trimmed away, so there is no slot for knowledge either
    request = client.chat.completions.calls[0]["messages"]
    assert request == [{"role": "system", "content": "sys"}]
    assert result.tokens["knowledgeApplied"] is False
    assert result.tokens["knowledgeTokens"] == 0
    assert result.tokens["userTokens"] == 0


def test_zero_documents_means_no_knowledge():
    client = FakeOpenAIClient()
    orchestrator = make_orchestrator(client=client, chroma_client=FakeChromaClient())

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    assert result.tokens["knowledgeApplied"] is False
    assert len(client.chat.completions.calls[0]["messages"]) == 2


def test_vector_query_failure_still_replies():
    collection = MagicMock()
    collection.query.side_effect = RuntimeError("chroma down")
    chroma_client = MagicMock()
    chroma_client.get_or_create_collection.return_value = collection
    orchestrator = make_orchestrator(chroma_client=chroma_client)

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    assert result.response == "[fake-openai] Hello"
    assert result.tokens["knowledgeApplied"] is False


def test_completion_failure_propagates_and_keeps_user_message():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
    orchestrator = make_orchestrator(client=client)

    with pytest.raises(RuntimeError, match="rate limited"):
        asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    history = orchestrator.get_conversation_history(CONVERSATION)
    assert history[-1] == {"role": "user", "content": "Hello"}
    assert len(history) == 2


@pytest.mark.parametrize("content", [None, ""])
def test_empty_completion_is_fatal(content):
    orchestrator = make_orchestrator(client=scripted_client(content))

    with pytest.raises(EmptyCompletionError):
        asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))

    assert orchestrator.get_conversation_history(CONVERSATION)[-1]["role"] == "user"


def test_missing_choices_is_fatal():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
    orchestrator = make_orchestrator(client=client)

    with pytest.raises(EmptyCompletionError):
        asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hello"))


def test_reply_links_are_repaired_from_knowledge_sources():
    client = scripted_client("Join our [Workshop](#) this week.")
    orchestrator = make_orchestrator(client=client, chroma_client=workshop_store())

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "workshops?"))

    assert result.response == "Join our Workshop\nhttps://kb.test/workshops this week."
    assert orchestrator.get_conversation_history(CONVERSATION)[-1]["content"] == result.response


def test_token_accounting_is_consistent():
    orchestrator = make_orchestrator(chroma_client=workshop_store())

    async def run():
        results = []
        for text in ("one", "two", "three"):
            results.append(await orchestrator.generate_reply(CONVERSATION, text))
        return results

    for result in asyncio.run(run()):
        tokens = result.tokens
        assert tokens["conversationTokens"] >= 0
        assert tokens["conversationTokens"] == max(
            0, tokens["requestTokens"] - tokens["knowledgeTokens"] - tokens["userTokens"]
        )
        assert tokens["requestTokens"] <= tokens["tokenLimit"]


def test_stored_history_is_trimmed_to_budget():
    orchestrator = make_orchestrator(token_limit=40, system_prompt="sys")

    async def run():
        for text in ("aaaaaaaa", "bbbbbbbb", "cccccccc"):
            await orchestrator.generate_reply(CONVERSATION, text)

    asyncio.run(run())
    history = orchestrator.get_conversation_history(CONVERSATION)
    assert history[0] == {"role": "system", "content": "sys"}
    assert orchestrator.history.count_tokens(history) <= 40
    assert history[-1]["content"] == "[fake-openai] cccccccc"


def test_reset_conversation_starts_fresh():
    orchestrator = make_orchestrator()
    asyncio.run(orchestrator.generate_reply(CONVERSATION, "Hi there"))

    orchestrator.reset_conversation(CONVERSATION)
    assert orchestrator.get_conversation_history(CONVERSATION) == [{"role": "system", "content": "You are helpful"}]

    result = asyncio.run(orchestrator.generate_reply(CONVERSATION, "How are you?"))
    assert result.response == "[fake-openai] How are you?"
    assert len(orchestrator.get_conversation_history(CONVERSATION)) == 3


def test_turns_for_the_same_conversation_are_serialized():
    async def slow_create(model, messages, **kwargs):
        last = messages[-1]["content"]
        await asyncio.sleep(0.05 if last == "first" else 0)
        return completion(f"reply to {last}")

    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=slow_create)
    orchestrator = make_orchestrator(client=client)

    async def run():
        await asyncio.gather(
            orchestrator.generate_reply(CONVERSATION, "first"),
            orchestrator.generate_reply(CONVERSATION, "second"),
        )

    asyncio.run(run())
    contents = [m["content"] for m in orchestrator.get_conversation_history(CONVERSATION)[1:]]
    assert contents == ["first", "reply to first", "second", "reply to second"]
