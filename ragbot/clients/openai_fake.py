"""In-process stand-in for AsyncOpenAI, used with USE_FAKE_CLIENTS and in tests.

Completions echo the last message as `[fake-openai] {content}`; embeddings
are small deterministic vectors derived from the input text.
"""
import hashlib
import json
from types import SimpleNamespace
from typing import Any, Dict, List


class _FakeCompletions:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def create(self, model: str, messages: List[Dict[str, Any]], **kwargs):
        self.calls.append({"model": model, "messages": [dict(m) for m in messages], **kwargs})

        last = messages[-1] if messages else {}
        content = last.get("content")
        if not isinstance(content, str):
            content = json.dumps(content if content is not None else "", ensure_ascii=False)

        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(role="assistant", content=f"[fake-openai] {content}"))],
            usage=SimpleNamespace(
                prompt_tokens=len(content),
                completion_tokens=len(content),
                total_tokens=len(content) * 2,
            ),
        )


class _FakeEmbeddings:
    def __init__(self, dimensions: int = 8):
        self.dimensions = dimensions
        self.calls: List[Dict[str, Any]] = []

    def _vector(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[i] / 255.0 for i in range(self.dimensions)]

    async def create(self, model: str, input, **kwargs):
        texts = [input] if isinstance(input, str) else list(input)
        self.calls.append({"model": model, "input": texts})
        return SimpleNamespace(
            data=[SimpleNamespace(index=i, embedding=self._vector(t)) for i, t in enumerate(texts)],
            usage=SimpleNamespace(prompt_tokens=sum(len(t) for t in texts), total_tokens=sum(len(t) for t in texts)),
        )


class FakeOpenAIClient:
    """Exposes `chat.completions.create` and `embeddings.create` like AsyncOpenAI."""

    def __init__(self):
        self.chat = SimpleNamespace(completions=_FakeCompletions())
        self.embeddings = _FakeEmbeddings()
