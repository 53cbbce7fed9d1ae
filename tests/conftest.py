"""Shared fakes for memory tests: no model downloads, no network."""

import hashlib
import re
import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory.errors import EmbeddingError  # noqa: E402

DIM = 384
_WORD = re.compile(r"[a-z0-9]+")


class WordTokenizer:
    """One token per whitespace-separated word."""

    def __init__(self):
        self.vocab: dict[str, int] = {}
        self.words: list[str] = []

    def encode(self, text: str) -> list[int]:
        ids = []
        for word in text.split():
            if word not in self.vocab:
                self.vocab[word] = len(self.words)
                self.words.append(word)
            ids.append(self.vocab[word])
        return ids

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self.words[t] for t in tokens)

    def count_tokens(self, text: str) -> int:
        return len(text.split())


def bag_of_words(text: str, dim: int = DIM) -> np.ndarray:
    """Normalized bag of hashed lowercase words; shared words pull texts together."""
    vector = np.zeros(dim, dtype=np.float32)
    for word in _WORD.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vector[bucket] += 1.0
    norm = np.linalg.norm(vector)
    return vector / norm if norm else vector


class FakeEmbedder:
    """Deterministic embedder; specific texts can be pinned to chosen vectors."""

    def __init__(self, overrides=None, fail_on=(), dim: int = DIM):
        self.overrides = dict(overrides or {})
        self.fail_on = set(fail_on)
        self.dimension = dim
        self.tokenizer = WordTokenizer()
        self.calls: list[str] = []

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if text in self.fail_on or "*" in self.fail_on:
            raise EmbeddingError(f"cannot embed {text!r}")
        if text in self.overrides:
            return np.asarray(self.overrides[text], dtype=np.float32)
        return bag_of_words(text, self.dimension)

    def count_tokens(self, text: str) -> int:
        return self.tokenizer.count_tokens(text)


class FakeCompletionClient:
    """Records the messages it was sent and answers from a script."""

    def __init__(self, replies=None, error: Exception = None):
        self.replies = list(replies or ["Sure."])
        self.error = error
        self.sent: list[list] = []
        self.options: list[dict] = []

    async def complete(self, messages, stream=False, response_format=None, on_token=None):
        self.sent.append(list(messages))
        self.options.append({"stream": stream, "response_format": response_format})
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if stream and on_token is not None:
            for word in reply.split(" "):
                on_token(word)
        return reply


def unit(i: int, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def template():
    from llm.template import ChatTemplate
    return ChatTemplate(system_prompt="You are a careful assistant.")


@pytest.fixture
def memory_config(tmp_path):
    from config import MemoryConfig
    return MemoryConfig(home=tmp_path / "home")


@pytest.fixture
def assistant_config(memory_config):
    from config import AssistantConfig
    return AssistantConfig(
        api_key="test-key",
        api_base="http://localhost:5001/v1",
        model="test-model",
        context_max_tokens=60,
        assistant_minimum_context_tokens=10,
        brain_max_tokens=40,
        memory=memory_config,
    )


@pytest.fixture
def fake_openai():
    """Stand-in for AsyncOpenAI exposing chat.completions.create."""
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        message = SimpleNamespace(content="Hello from the model")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    client.calls = calls
    return client
