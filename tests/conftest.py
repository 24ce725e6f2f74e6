import re
import threading
import zlib
from typing import List, Optional

import pytest

from quill.config import QuillConfig
from quill.embeddings import BaseEmbeddingProvider, EmbeddingClient
from quill.llm import AnswerGenerator, GeneratedAnswer
from quill.models import Citation
from quill.quill import Quill

DIM = 8

# Words sharing an axis are "semantically close" for the fake provider
CONCEPTS = {
    "ml": 0, "machine": 0, "learning": 0, "model": 0, "neural": 0, "training": 0, "ai": 0,
    "project": 1, "plan": 1, "deadline": 1, "roadmap": 1,
    "lunch": 2, "menu": 2, "grocery": 2, "milk": 2, "recipe": 2, "dinner": 2,
    "travel": 3, "flight": 3, "trip": 3, "hotel": 3,
    "meeting": 4, "call": 4, "standup": 4,
}
HASHED_AXES = range(5, DIM)
BASELINE = 0.01

_TOKEN = re.compile(r"\w+")


def fake_vector(text: str) -> List[float]:
    vector = [BASELINE] * DIM
    for token in _TOKEN.findall(text.lower()):
        axis = CONCEPTS.get(token)
        if axis is None:
            axis = HASHED_AXES[zlib.crc32(token.encode()) % len(HASHED_AXES)]
        vector[axis] += 1.0
    return vector


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Deterministic concept-axis embeddings; counts calls, can be gated or broken."""

    def __init__(self, gate: Optional[threading.Event] = None):
        super().__init__("fake-embedding")
        self.gate = gate
        self.calls = 0
        self.batch_sizes: List[int] = []
        self.fail_with: Optional[Exception] = None
        self.fail_on_calls = set()

    @property
    def dimension(self) -> int:
        return DIM

    def _embed_batch(self, texts: List[str], *, query: bool = False) -> List[List[float]]:
        if self.gate is not None:
            self.gate.wait(timeout=10)
        self.calls += 1
        self.batch_sizes.append(len(texts))
        if self.fail_with is not None:
            raise self.fail_with
        if self.calls in self.fail_on_calls:
            raise RuntimeError(f"provider outage on call {self.calls}")
        return [fake_vector(t) for t in texts]


class FakeAnswerGenerator(AnswerGenerator):
    def __init__(self, answer: str = "Based on [1], yes.", citations=None):
        self.answer = answer
        self.citations = list(citations or [])
        self.prompts = []

    def generate(self, system_prompt: str, user_prompt: str) -> GeneratedAnswer:
        self.prompts.append((system_prompt, user_prompt))
        return GeneratedAnswer(text=self.answer, citations=list(self.citations))


@pytest.fixture
def config(tmp_path) -> QuillConfig:
    return QuillConfig(
        embedding_provider="fake",
        embedding_model="fake-embedding",
        embedding_dim=DIM,
        embedding_rate_limit=0,
        db_path=str(tmp_path / "quill.db"),
        index_path=str(tmp_path / "quill.vectors"),
    )


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def generator() -> FakeAnswerGenerator:
    return FakeAnswerGenerator(citations=[Citation(title="Wikipedia: ML", url="https://example.org/ml")])


def build_quill(config: QuillConfig, provider: BaseEmbeddingProvider, generator=None) -> Quill:
    embedder = EmbeddingClient(provider, config.embedding_dim, batch_size=config.embedding_batch_size)
    return Quill(config, embedder=embedder, generator=generator)


@pytest.fixture
def quill(config, provider, generator):
    engine = build_quill(config, provider, generator)
    yield engine
    engine.close()
