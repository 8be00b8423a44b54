"""
Shared pytest fixtures.

The embedding and chat providers are replaced with deterministic in-process
fakes so the whole pipeline runs offline. Index tests use a real Chroma
PersistentClient rooted in ``tmp_path``.
"""

from __future__ import annotations

import hashlib
import re
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

import rag_cli

CSV_HEADER = "index,season no.,episode no.,episode name,name,line\n"

SAMPLE_ROWS = [
    '0,1,1,Pilot,Rick,"Morty, I built a portal gun in the garage."',
    '1,1,1,Pilot,Morty,"Aw geez Rick, a portal gun?"',
    '2,1,1,Pilot, RICK ,"The portal gun needs fresh fluid, Morty."',
    '3,1,2,Lawnmower Dog,Rick Prime,"I am the real Rick."',
    '4,1,2,Lawnmower Dog,rick,"Dogs with helmets are a bad idea."',
    '5,1,2,Lawnmower Dog,Summer,"Mom, Rick is being weird again."',
    '6,2,1,A Rickle in Time,Rick,"Time is fractured, stay in the ""safe"" zone."',
    '7,2,1,A Rickle in Time,Jerry,"I like the portal gun too."',
]


def write_csv(path: Path, rows: List[str], header: str = CSV_HEADER) -> Path:
    path.write_text(header + "\n".join(rows) + "\n", encoding="utf-8")
    return path


class FakeEmbeddingProvider(rag_cli.EmbeddingProvider):
    """Hashed bag-of-words vectors: same text, same vector, every time."""

    name = "fake"

    def __init__(self, model_name: str = "bag-of-words", dims: int = 64, fail_on: Optional[str] = None) -> None:
        self.model_name = model_name
        self.dims = dims
        self.fail_on = fail_on
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def embed(self, texts: List[str]) -> List[List[float]]:
        with self._lock:
            self.calls.append(list(texts))
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise RuntimeError("embedding backend unavailable")
        return [self.vector(t) for t in texts]

    def vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dims
        # Constant component keeps empty strings away from the zero vector
        vec[0] = 0.25
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            slot = 1 + int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % (self.dims - 1)
            vec[slot] += 1.0
        return vec

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)


def is_rewrite_call(messages: List[Dict[str, str]]) -> bool:
    return bool(messages) and messages[-1]["content"] == rag_cli.REPHRASE_INSTRUCTION


class FakeChatProvider(rag_cli.ChatProvider):
    """Records every call; answers with ``responder(messages)``."""

    def __init__(self, responder: Optional[Callable[[List[Dict[str, str]]], str]] = None) -> None:
        self.responder = responder or default_responder
        self.calls: List[tuple] = []

    def generate(self, messages: List[Dict[str, str]], temperature: float) -> str:
        self.calls.append(([dict(m) for m in messages], temperature))
        return self.responder(messages)

    @property
    def rewrite_calls(self) -> List[List[Dict[str, str]]]:
        return [m for m, _t in self.calls if is_rewrite_call(m)]

    @property
    def answer_calls(self) -> List[List[Dict[str, str]]]:
        return [m for m, _t in self.calls if not is_rewrite_call(m)]


def default_responder(messages: List[Dict[str, str]]) -> str:
    if is_rewrite_call(messages):
        return "standalone query about the portal gun"
    return "Wubba lubba dub dub"


class RecordingRetriever:
    """Stands in for rag_cli.Retriever when no index is needed."""

    def __init__(self, documents: Optional[List] = None, error: Optional[Exception] = None) -> None:
        self.documents = documents if documents is not None else []
        self.error = error
        self.queries: List[str] = []

    def retrieve(self, query: str, k: Optional[int] = None):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.documents)


@pytest.fixture
def sample_csv(tmp_path) -> Path:
    return write_csv(tmp_path / "scripts.csv", SAMPLE_ROWS)


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def chat_llm() -> FakeChatProvider:
    return FakeChatProvider()


@pytest.fixture
def store_dir(tmp_path) -> Path:
    return tmp_path / "store"
