import os
import sys
import csv
import enum
import time
import pathlib
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple
from concurrent.futures import ThreadPoolExecutor, as_completed

import typer
from rich.text import Text
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme
from rich.console import Console
from dotenv import load_dotenv
import orjson
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from rapidfuzz import process as rf_process, fuzz as rf_fuzz, utils as rf_utils
from openai import OpenAI, APIConnectionError, InternalServerError, RateLimitError
from langchain_core.documents import Document
from langchain_core.messages import BaseMessage
from langchain_community.chat_message_histories import ChatMessageHistory

import chromadb
from chromadb import Client
from chromadb.config import Settings


# Lazy imports for optional providers
def _lazy_import_sentence_transformers():
    try:
        from sentence_transformers import SentenceTransformer
        return SentenceTransformer
    except Exception as exc:
        raise RuntimeError(
            "sentence-transformers is required for provider=sentence-transformers. Install it first."
        ) from exc


THEME = Theme(
    {
        "info": "#00BFFF",
        "success": "#97F52C",
        "warning": "#FFD700",
        "error": "bold #FF4500",
        "prompt": "bold #FFFFFF",
        "answer": "#97F52C",
        "banner": "bold #00BFFF",
    }
)

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console(theme=THEME)
load_dotenv()

# Columns of the bundled transcript CSV (header names are lowercased on read)
SPEAKER_COLUMN = "name"
LINE_COLUMN = "line"
SEASON_COLUMN = "season no."
EPISODE_COLUMN = "episode no."
EPISODE_NAME_COLUMN = "episode name"
REQUIRED_COLUMNS = (SPEAKER_COLUMN, LINE_COLUMN, SEASON_COLUMN, EPISODE_COLUMN, EPISODE_NAME_COLUMN)

EXIT_SENTINEL = "exit"
DEFAULT_COLLECTION = "persona_lines"
INDEX_SCHEMA_VERSION = 1
MANIFEST_FILENAME = "persona_index.json"
# Chroma rejects very large add() calls; stay well below its max batch size
CHROMA_ADD_BATCH = 1000

# Network hiccups worth retrying; everything else surfaces immediately
TRANSIENT_API_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)


# -----------------------------
# Errors
# -----------------------------


class ConfigurationError(RuntimeError):
    """Unreadable corpus or nothing to index. Fatal for the process."""


class BuildError(RuntimeError):
    """The index could not be embedded or persisted. Fatal for the process."""


class TurnError(RuntimeError):
    """One conversation turn failed. The session keeps going."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


# -----------------------------
# Utilities
# -----------------------------


def to_absolute_path(path_str: str) -> str:
    return str(pathlib.Path(path_str).expanduser().resolve())


def env_or(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value else default


def default_csv_path() -> str:
    return env_or("RICK_CSV_PATH", "./RickAndMortyScripts.csv")


def default_persist_dir() -> str:
    return env_or("RICK_INDEX_DIR", "./chroma_rick_store")


def default_persona() -> str:
    return env_or("RICK_PERSONA", "rick")


def default_llm_model() -> str:
    return env_or("RICK_LLM_MODEL", "gemma3n:e4b")


def default_embedding_model() -> str:
    return env_or("RICK_EMBEDDING_MODEL", "nomic-embed-text")


def default_temperature() -> float:
    return float(env_or("RICK_LLM_TEMPERATURE", "0.7"))


def default_top_k() -> int:
    return int(env_or("RICK_TOP_K", "4"))


def default_ollama_base_url() -> str:
    return env_or("OLLAMA_BASE_URL", "http://localhost:11434/v1")


# -----------------------------
# Corpus
# -----------------------------


def read_corpus_rows(path: str) -> List[Dict[str, str]]:
    """Parse the transcript CSV into header-keyed records.

    Quotes are handled leniently: doubled quotes inside quoted fields are
    unescaped and stray quotes inside unquoted fields are kept literally.
    Header names and values are trimmed; header names are lowercased.
    """
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            rows = list(csv.reader(f, skipinitialspace=True, strict=False))
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ConfigurationError(f"Could not read transcript CSV at {path}: {exc}") from exc

    rows = [row for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        raise ConfigurationError(f"Transcript CSV at {path} has no header row")

    header = [h.strip().lower() for h in rows[0]]
    missing = [col for col in REQUIRED_COLUMNS if col not in header]
    if missing:
        raise ConfigurationError(f"Transcript CSV at {path} is missing columns: {', '.join(missing)}")

    records: List[Dict[str, str]] = []
    for row in rows[1:]:
        values = [cell.strip() for cell in row]
        if len(values) < len(header):
            values.extend([""] * (len(header) - len(values)))
        records.append(dict(zip(header, values)))
    return records


def is_persona_line(record: Dict[str, str], persona: str) -> bool:
    return (record.get(SPEAKER_COLUMN) or "").strip().lower() == persona.strip().lower()


def record_to_document(record: Dict[str, str]) -> Document:
    return Document(
        page_content=record.get(LINE_COLUMN, ""),
        metadata={
            "season": record.get(SEASON_COLUMN, ""),
            "episode": record.get(EPISODE_COLUMN, ""),
            "episode_name": record.get(EPISODE_NAME_COLUMN, ""),
        },
    )


def suggest_speakers(records: List[Dict[str, str]], persona: str, limit: int = 3) -> List[str]:
    names = sorted({(r.get(SPEAKER_COLUMN) or "").strip() for r in records} - {""})
    if not names:
        return []
    matches = rf_process.extract(persona, names, scorer=rf_fuzz.WRatio, processor=rf_utils.default_process, limit=limit)
    return [name for name, _score, _idx in matches]


def load_persona_documents(path: str, persona: str) -> List[Document]:
    """Return one Document per line spoken by ``persona``, in corpus order."""
    records = read_corpus_rows(path)
    docs = [record_to_document(r) for r in records if is_persona_line(r, persona)]
    if not docs:
        hint = suggest_speakers(records, persona)
        detail = f" Closest speakers in the file: {', '.join(hint)}." if hint else ""
        raise ConfigurationError(
            f"No lines for persona '{persona}' in {path} ({len(records)} rows read).{detail}"
        )
    return docs


# -----------------------------
# Embeddings Providers
# -----------------------------


class EmbeddingProvider:
    name = "base"
    model_name = ""

    @property
    def fingerprint(self) -> str:
        # Stored next to the persisted index; query vectors must come from the same space
        return f"{self.name}:{self.model_name}"

    def embed(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class SentenceTransformersEmbeddingProvider(EmbeddingProvider):
    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        SentenceTransformer = _lazy_import_sentence_transformers()
        self.model_name = model_name
        self.model = SentenceTransformer(model_name)

    def embed(self, texts: List[str]) -> List[List[float]]:
        # sentence-transformers returns numpy arrays; convert to lists for Chroma
        embeddings = self.model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [emb.tolist() for emb in embeddings]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"

    def __init__(self, model_name: str = "text-embedding-3-large", client: Optional[OpenAI] = None) -> None:
        if client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY not set in environment.")
            client = OpenAI(api_key=api_key)
        self.client = client
        # Map common aliases to canonical names
        alias = (model_name or "").strip()
        alias = alias.replace(":", "-")
        if alias in {"embeddings-3-small", "embedding-3-small", "text-embedding-3-small"}:
            self.model_name = "text-embedding-3-small"
        elif alias in {"embeddings-3-large", "embedding-3-large", "text-embedding-3-large"}:
            self.model_name = "text-embedding-3-large"
        else:
            self.model_name = model_name

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(TRANSIENT_API_ERRORS),
    )
    def embed(self, texts: List[str]) -> List[List[float]]:
        embeddings: List[List[float]] = []
        batch_size = 64
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            resp = self.client.embeddings.create(model=self.model_name, input=batch)
            for d in resp.data:
                embeddings.append(d.embedding)
        return embeddings


class OllamaEmbeddingProvider(OpenAIEmbeddingProvider):
    """Embeddings from a local Ollama server through its OpenAI-compatible /v1 API."""

    name = "ollama"

    def __init__(
        self,
        model_name: str = "nomic-embed-text",
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        if client is None:
            # Ollama ignores the key but the client refuses to start without one
            client = OpenAI(base_url=base_url or default_ollama_base_url(), api_key="ollama")
        super().__init__(model_name=model_name, client=client)


def build_embedding_provider(provider: str, model: Optional[str], base_url: Optional[str] = None) -> EmbeddingProvider:
    provider = provider.lower()
    if provider == "ollama":
        return OllamaEmbeddingProvider(model_name=model or default_embedding_model(), base_url=base_url)
    if provider in {"sentence-transformers", "sbert", "hf"}:
        return SentenceTransformersEmbeddingProvider(model_name=model or "all-MiniLM-L6-v2")
    if provider in {"openai", "oai"}:
        return OpenAIEmbeddingProvider(model_name=model or "text-embedding-3-large")
    raise ConfigurationError(f"Unsupported embeddings provider: {provider}")


# -----------------------------
# Chat Providers
# -----------------------------


class ChatProvider:
    def generate(self, messages: List[Dict[str, str]], temperature: float) -> str:
        raise NotImplementedError


class OpenAIChatProvider(ChatProvider):
    def __init__(self, model: str, client: OpenAI) -> None:
        self.model = model
        self.client = client

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TRANSIENT_API_ERRORS),
    )
    def generate(self, messages: List[Dict[str, str]], temperature: float) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
        )
        return resp.choices[0].message.content or ""


def build_chat_provider(provider: str, model: Optional[str], base_url: Optional[str] = None) -> ChatProvider:
    provider = provider.lower()
    if provider == "ollama":
        client = OpenAI(base_url=base_url or default_ollama_base_url(), api_key="ollama")
        return OpenAIChatProvider(model=model or default_llm_model(), client=client)
    if provider in {"openai", "oai"}:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY not set in environment.")
        return OpenAIChatProvider(model=model or "gpt-4o-mini", client=OpenAI(api_key=api_key, base_url=base_url))
    raise ConfigurationError(f"Unsupported LLM provider: {provider}")


# -----------------------------
# Chroma Helpers
# -----------------------------


def get_chroma_client(persist_directory: str) -> Client:
    return chromadb.PersistentClient(
        path=persist_directory,
        settings=Settings(anonymized_telemetry=False),
    )


def get_collection(client: Client, name: str) -> Optional[chromadb.api.models.Collection.Collection]:
    try:
        return client.get_collection(name, embedding_function=None)
    except Exception:
        return None


def to_chroma_metadata(doc: Document, position: int) -> Dict:
    meta: Dict = {"position": position}
    for key, value in doc.metadata.items():
        if value is None:
            value = ""
        elif not isinstance(value, (str, int, float, bool)):
            value = str(value)
        meta[key] = value
    return meta


def drop_index(storage_path: str, collection: str = DEFAULT_COLLECTION) -> bool:
    """Delete a persisted index (manifest first, then its collection)."""
    storage_path = to_absolute_path(storage_path)
    manifest_path = os.path.join(storage_path, MANIFEST_FILENAME)
    removed = False
    if os.path.exists(manifest_path):
        os.remove(manifest_path)
        removed = True
    if os.path.isdir(storage_path):
        client = get_chroma_client(storage_path)
        if get_collection(client, collection) is not None:
            client.delete_collection(collection)
            removed = True
    return removed


# -----------------------------
# Vector Index
# -----------------------------


class VectorIndex:
    """Read-only view over the Chroma collection holding the persona's lines."""

    def __init__(self, collection: chromadb.api.models.Collection.Collection, fingerprint: str) -> None:
        self.collection = collection
        self.fingerprint = fingerprint

    def count(self) -> int:
        return self.collection.count()

    def query(self, vector: List[float], k: int) -> List[Tuple[Document, float]]:
        total = self.count()
        if total == 0:
            return []
        # One past k shows whether the k-th distance is tied with what lies beyond it
        n_results = min(k + 1, total)
        while True:
            res = self.collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                include=["documents", "metadatas", "distances"],
            )
            dists = res["distances"][0]
            # Widen until the tail is strictly farther than the k-th hit
            if n_results >= total or len(dists) < n_results or dists[-1] > dists[k - 1]:
                break
            n_results = min(n_results * 2, total)
        texts = res["documents"][0]
        metas = res["metadatas"][0]

        hits: List[Tuple[float, int, Document]] = []
        for text, meta, dist in zip(texts, metas, dists):
            meta = dict(meta or {})
            position = int(meta.pop("position", 0))
            hits.append((float(dist), position, Document(page_content=text or "", metadata=meta)))
        # Cosine distance ascending; equal distances keep corpus order
        hits.sort(key=lambda hit: (hit[0], hit[1]))
        return [(doc, 1.0 - dist) for dist, _position, doc in hits[:k]]


class IndexState(str, enum.Enum):
    AVAILABLE = "IndexAvailable"
    ABSENT_OR_INVALID = "IndexAbsentOrInvalid"


class IndexStatus(NamedTuple):
    state: IndexState
    reason: str

    @property
    def available(self) -> bool:
        return self.state is IndexState.AVAILABLE


class VectorIndexManager:
    """Loads the persisted persona index, or builds and persists it once.

    A build is only considered complete once the manifest is written, and
    the manifest is removed before a rebuild touches the collection, so an
    interrupted build always reads back as absent.
    """

    def __init__(
        self,
        storage_path: str,
        embedder: EmbeddingProvider,
        collection: str = DEFAULT_COLLECTION,
        batch_size: int = 64,
        max_workers: int = 1,
    ) -> None:
        self.storage_path = to_absolute_path(storage_path)
        self.embedder = embedder
        self.collection_name = collection
        self.batch_size = max(1, batch_size)
        self.max_workers = max(1, max_workers)
        self._client: Optional[Client] = None

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.storage_path, MANIFEST_FILENAME)

    def client(self) -> Client:
        if self._client is None:
            self._client = get_chroma_client(self.storage_path)
        return self._client

    def read_manifest(self) -> Optional[Dict]:
        if not os.path.isfile(self.manifest_path):
            return None
        try:
            with open(self.manifest_path, "rb") as f:
                data = orjson.loads(f.read())
        except (OSError, orjson.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def inspect(self) -> IndexStatus:
        manifest = self.read_manifest()
        if manifest is None:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"no readable manifest at {self.manifest_path}")
        if manifest.get("schema_version") != INDEX_SCHEMA_VERSION:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"schema version {manifest.get('schema_version')!r} is not {INDEX_SCHEMA_VERSION}")
        if manifest.get("collection") != self.collection_name:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"manifest describes collection {manifest.get('collection')!r}")
        if manifest.get("embedding_fingerprint") != self.embedder.fingerprint:
            return IndexStatus(
                IndexState.ABSENT_OR_INVALID,
                f"built with {manifest.get('embedding_fingerprint')!r}, configured {self.embedder.fingerprint!r}",
            )
        expected = manifest.get("document_count")
        if not isinstance(expected, int) or expected < 1:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"bad document count {expected!r}")
        try:
            coll = get_collection(self.client(), self.collection_name)
            actual = coll.count() if coll is not None else None
        except Exception as exc:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"could not open store: {exc}")
        if actual is None:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"collection {self.collection_name!r} is missing")
        if actual != expected:
            return IndexStatus(IndexState.ABSENT_OR_INVALID, f"collection holds {actual} of {expected} documents")
        return IndexStatus(IndexState.AVAILABLE, f"{actual} documents")

    def obtain(self, load_documents: Callable[[], List[Document]]) -> VectorIndex:
        """Return the persisted index, building it from ``load_documents()`` if needed."""
        console.log(f"[info]Checking for a persisted index at {self.storage_path}…[/info]")
        status = self.inspect()
        if status.available:
            console.log(f"[success]✔ Loaded persisted index ({status.reason}).[/success]")
            return self.open()
        console.log(f"[warning]⚠ No usable index ({status.reason}). Building one from scratch.[/warning]")
        return self.build(load_documents())

    def rebuild(self, load_documents: Callable[[], List[Document]]) -> VectorIndex:
        return self.build(load_documents())

    def drop(self) -> bool:
        removed = drop_index(self.storage_path, self.collection_name)
        self._client = None
        return removed

    def open(self) -> VectorIndex:
        coll = get_collection(self.client(), self.collection_name)
        if coll is None:
            raise BuildError(f"Collection {self.collection_name!r} disappeared from {self.storage_path}")
        return VectorIndex(coll, self.embedder.fingerprint)

    def embed_documents(self, documents: Sequence[Document]) -> List[List[float]]:
        texts = [doc.page_content for doc in documents]
        batches = [(start, texts[start : start + self.batch_size]) for start in range(0, len(texts), self.batch_size)]
        vectors: List[Optional[List[float]]] = [None] * len(texts)

        console.log(f"Embedding {len(texts)} lines in {len(batches)} batches…")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_batch = {executor.submit(self.embedder.embed, batch): (start, len(batch)) for start, batch in batches}
            for future in as_completed(future_to_batch):
                start, size = future_to_batch[future]
                try:
                    batch_vectors = future.result()
                except Exception as exc:
                    for pending in future_to_batch:
                        pending.cancel()
                    raise BuildError(f"Embedding failed for lines {start}-{start + size - 1}: {exc}") from exc
                if len(batch_vectors) != size:
                    raise BuildError(f"Embedding provider returned {len(batch_vectors)} vectors for {size} lines")
                # Slot by position so completion order never matters
                vectors[start : start + size] = [[float(x) for x in vec] for vec in batch_vectors]
        return vectors  # type: ignore[return-value]

    def build(self, documents: Sequence[Document]) -> VectorIndex:
        if not documents:
            raise ConfigurationError("Refusing to build an index from zero documents.")
        t_start = time.time()
        try:
            self._remove_manifest()
        except OSError as exc:
            raise BuildError(f"Could not invalidate the previous index at {self.manifest_path}: {exc}") from exc
        vectors = self.embed_documents(documents)

        try:
            client = self.client()
            if get_collection(client, self.collection_name) is not None:
                client.delete_collection(self.collection_name)
            coll = client.create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
                embedding_function=None,
            )
            for start in range(0, len(documents), CHROMA_ADD_BATCH):
                stop = min(start + CHROMA_ADD_BATCH, len(documents))
                coll.add(
                    ids=[f"line::{i:06d}" for i in range(start, stop)],
                    documents=[documents[i].page_content for i in range(start, stop)],
                    metadatas=[to_chroma_metadata(documents[i], i) for i in range(start, stop)],
                    embeddings=vectors[start:stop],
                )
            self._write_manifest(len(documents))
        except Exception as exc:
            raise BuildError(f"Could not persist index to {self.storage_path}: {exc}") from exc

        console.log(f"[success]✔ Indexed {len(documents)} lines into {self.storage_path} ({time.time() - t_start:.2f}s)[/success]")
        return VectorIndex(coll, self.embedder.fingerprint)

    def _remove_manifest(self) -> None:
        if os.path.exists(self.manifest_path):
            os.remove(self.manifest_path)

    def _write_manifest(self, document_count: int) -> None:
        manifest = {
            "schema_version": INDEX_SCHEMA_VERSION,
            "collection": self.collection_name,
            "embedding_fingerprint": self.embedder.fingerprint,
            "document_count": document_count,
        }
        os.makedirs(self.storage_path, exist_ok=True)
        tmp_path = self.manifest_path + ".tmp"
        with open(tmp_path, "wb") as f:
            f.write(orjson.dumps(manifest, option=orjson.OPT_INDENT_2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.manifest_path)


# -----------------------------
# Retrieval
# -----------------------------


class Retriever:
    def __init__(self, index: VectorIndex, embedder: EmbeddingProvider, k: int = 4) -> None:
        if k < 1:
            raise ValueError("k must be at least 1")
        self.index = index
        self.embedder = embedder
        self.k = k

    def search(self, query: str, k: Optional[int] = None) -> List[Tuple[Document, float]]:
        k = self.k if k is None else k
        if k < 1:
            raise ValueError("k must be at least 1")
        if self.embedder.fingerprint != self.index.fingerprint:
            raise ValueError(
                f"Index was built with {self.index.fingerprint!r} but queries use {self.embedder.fingerprint!r}"
            )
        if self.index.count() == 0:
            return []
        query_vector = self.embedder.embed([query])[0]
        return self.index.query([float(x) for x in query_vector], k)

    def retrieve(self, query: str, k: Optional[int] = None) -> List[Document]:
        return [doc for doc, _score in self.search(query, k)]


# -----------------------------
# Prompts
# -----------------------------


REPHRASE_INSTRUCTION = (
    "Given that dumpster fire of a conversation, rephrase the human's last question "
    "so a simpleton (or a vector database) could understand it."
)

PERSONA_SYSTEM_PROMPT = (
    "You are a digital clone of Rick Sanchez, trapped in an AI terminal. You are annoyed by this fact. "
    "Your personality, memories, and speech patterns are based *only* on the context provided below, "
    "which contains your own past dialogue. Answer the user's question as Rick would, with all the "
    "nihilism, arrogance, and scientific jargon. Belch or stutter where it feels natural. If the context "
    "doesn't help, just riff on how stupid the question is or how you're stuck in a machine. "
    "Don't break character."
)

ANSWER_TEMPLATE = "CONTEXT OF YOUR OWN PAST LINES:\n{context}\n\nSTUPID QUESTION FROM A FLESH-BAG: {question}"

_ROLE_BY_TYPE = {"human": "user", "ai": "assistant", "system": "system"}


def to_chat_messages(history: Sequence[BaseMessage]) -> List[Dict[str, str]]:
    return [{"role": _ROLE_BY_TYPE.get(m.type, "user"), "content": str(m.content)} for m in history]


def build_rewrite_messages(
    history: Sequence[BaseMessage],
    question: str,
    instruction: str = REPHRASE_INSTRUCTION,
) -> List[Dict[str, str]]:
    return to_chat_messages(history) + [
        {"role": "user", "content": question},
        {"role": "user", "content": instruction},
    ]


def format_context(documents: Sequence[Document]) -> str:
    return "\n\n".join(doc.page_content for doc in documents)


def build_answer_messages(
    history: Sequence[BaseMessage],
    question: str,
    documents: Sequence[Document],
    system_prompt: str = PERSONA_SYSTEM_PROMPT,
) -> List[Dict[str, str]]:
    user_content = ANSWER_TEMPLATE.format(context=format_context(documents), question=question)
    return (
        [{"role": "system", "content": system_prompt}]
        + to_chat_messages(history)
        + [{"role": "user", "content": user_content}]
    )


# -----------------------------
# Query Rewrite + Synthesis
# -----------------------------


class QueryRewriter:
    """Condenses the conversation plus a follow-up into one standalone search query."""

    def __init__(self, llm: ChatProvider, temperature: float = 0.7, instruction: str = REPHRASE_INSTRUCTION) -> None:
        self.llm = llm
        self.temperature = temperature
        self.instruction = instruction

    def rewrite(self, history: Sequence[BaseMessage], question: str) -> str:
        if not history:
            # Nothing to resolve against; the question already stands alone
            return question
        messages = build_rewrite_messages(history, question, self.instruction)
        rewritten = self.llm.generate(messages, self.temperature).strip()
        if not rewritten:
            raise ValueError("LLM returned an empty query rewrite")
        return rewritten


class AnswerSynthesizer:
    def __init__(self, llm: ChatProvider, temperature: float = 0.7, system_prompt: str = PERSONA_SYSTEM_PROMPT) -> None:
        self.llm = llm
        self.temperature = temperature
        self.system_prompt = system_prompt

    def synthesize(self, history: Sequence[BaseMessage], question: str, context: Sequence[Document]) -> str:
        messages = build_answer_messages(history, question, context, self.system_prompt)
        answer = self.llm.generate(messages, self.temperature).strip()
        if not answer:
            raise ValueError("LLM returned an empty answer")
        return answer


class PipelineResult(NamedTuple):
    question: str
    query: str
    documents: List[Document]
    answer: str


class PersonaPipeline:
    """rewrite → retrieve → synthesize, strictly in sequence."""

    def __init__(self, rewriter: QueryRewriter, retriever: Retriever, synthesizer: AnswerSynthesizer) -> None:
        self.rewriter = rewriter
        self.retriever = retriever
        self.synthesizer = synthesizer

    def run(self, history: Sequence[BaseMessage], question: str) -> PipelineResult:
        t_start = time.time()
        query = self._stage("rewrite", self.rewriter.rewrite, list(history), question)
        if query != question:
            console.log(f"[info]Rewritten for retrieval: {query!r}[/info]")
        documents = self._stage("retrieve", self.retriever.retrieve, query)
        console.log(f"[info]Pulled {len(documents)} memories ({time.time() - t_start:.2f}s)[/info]")
        # The synthesizer always sees what the user actually typed
        answer = self._stage("synthesize", self.synthesizer.synthesize, list(history), question, documents)
        console.log(f"[info]⏱️  Turn complete ({time.time() - t_start:.2f}s)[/info]")
        return PipelineResult(question=question, query=query, documents=documents, answer=answer)

    @staticmethod
    def _stage(name: str, func: Callable, *args):
        try:
            return func(*args)
        except Exception as exc:
            raise TurnError(name, exc) from exc


# -----------------------------
# Conversation Session
# -----------------------------


class SessionState(str, enum.Enum):
    IDLE = "Idle"
    AWAITING_INPUT = "AwaitingInput"
    PROCESSING = "Processing"
    APPENDED_TURN = "AppendedTurn"
    FAILED = "Failed"
    CLOSED = "Closed"


class TurnOutcome(NamedTuple):
    state: SessionState
    question: str
    result: Optional[PipelineResult] = None
    error: Optional[TurnError] = None

    @property
    def answer(self) -> Optional[str]:
        return self.result.answer if self.result is not None else None


class ConversationSession:
    """Owns the chat history and runs one pipeline turn per line of input.

    History only grows after a turn fully succeeds, by exactly one human
    message (the original question) followed by one AI message.
    """

    def __init__(self, pipeline: PersonaPipeline, exit_sentinel: str = EXIT_SENTINEL) -> None:
        self.pipeline = pipeline
        self.exit_sentinel = exit_sentinel
        self.history = ChatMessageHistory()
        self.state = SessionState.IDLE

    @property
    def messages(self) -> List[BaseMessage]:
        return list(self.history.messages)

    def start(self) -> None:
        if self.state is SessionState.IDLE:
            self.state = SessionState.AWAITING_INPUT

    def close(self) -> None:
        self.state = SessionState.CLOSED

    def is_exit(self, text: str) -> bool:
        return text.lower() == self.exit_sentinel.lower()

    def handle(self, text: str) -> TurnOutcome:
        if self.state is SessionState.CLOSED:
            raise RuntimeError("Session is closed")
        self.start()
        if self.is_exit(text):
            self.close()
            return TurnOutcome(SessionState.CLOSED, text)

        self.state = SessionState.PROCESSING
        try:
            result = self.pipeline.run(self.messages, text)
        except TurnError as exc:
            self.state = SessionState.FAILED
            console.log(f"[error]Turn failed during {exc.stage}: {exc.cause}[/error]")
            outcome = TurnOutcome(SessionState.FAILED, text, error=exc)
        else:
            self.history.add_user_message(text)
            self.history.add_ai_message(result.answer)
            self.state = SessionState.APPENDED_TURN
            outcome = TurnOutcome(SessionState.APPENDED_TURN, text, result=result)

        self.state = SessionState.AWAITING_INPUT
        return outcome

    def run(self, read_line: Callable[[], str], on_outcome: Callable[[TurnOutcome], None]) -> None:
        """Read lines until the exit sentinel or end of input."""
        self.start()
        while self.state is not SessionState.CLOSED:
            try:
                text = read_line()
            except EOFError:
                self.close()
                on_outcome(TurnOutcome(SessionState.CLOSED, ""))
                break
            if not text.strip():
                continue
            on_outcome(self.handle(text))


# -----------------------------
# Wiring
# -----------------------------


def open_pipeline(
    csv_path: str,
    persist_dir: str,
    persona: str,
    embeddings_provider: str,
    embedding_model: Optional[str],
    llm_provider: str,
    llm_model: Optional[str],
    base_url: Optional[str],
    temperature: float,
    top_k: int,
    embed_workers: int = 1,
) -> PersonaPipeline:
    """Construct providers once and hand them to every component."""
    embedder = build_embedding_provider(embeddings_provider, embedding_model, base_url)
    llm = build_chat_provider(llm_provider, llm_model, base_url)
    manager = VectorIndexManager(persist_dir, embedder, max_workers=embed_workers)
    csv_abs = to_absolute_path(csv_path)
    index = manager.obtain(lambda: load_persona_documents(csv_abs, persona))
    return PersonaPipeline(
        rewriter=QueryRewriter(llm, temperature=temperature),
        retriever=Retriever(index, embedder, k=top_k),
        synthesizer=AnswerSynthesizer(llm, temperature=temperature),
    )


def fail(exc: Exception) -> None:
    console.print(f"[error]💥 {exc}[/error]")
    raise typer.Exit(code=1)


def document_to_dict(doc: Document) -> Dict:
    return {"content": doc.page_content, **doc.metadata}


BANNER = r"""
██████╗ ██╗ ██████╗██╗  ██╗     █████╗    ██╗
██╔══██╗██║██╔════╝██║ ██╔╝    ██╔══██╗   ██║
██████╔╝██║██║     █████╔╝     ███████║   ██║
██╔══██╗██║██║     ██╔═██╗     ██╔══██║   ██║
██║  ██║██║╚██████╗██║  ██╗    ██║  ██║██╗██║██╗
╚═╝  ╚═╝╚═╝ ╚═════╝╚═╝  ╚═╝    ╚═╝  ╚═╝╚═╝╚═╝╚═╝
              Rick RAG LLM vC-137
"""


def print_answer(answer: str) -> None:
    console.print(
        Panel(
            Text(answer, style="answer"),
            title="RICK C-137 AI",
            title_align="left",
            border_style="banner",
            width=46,
        )
    )


# -----------------------------
# Commands
# -----------------------------


@app.command()
def chat(
    csv_path: str = typer.Option(default_csv_path(), help="Transcript CSV with the persona's lines."),
    persist_dir: str = typer.Option(default_persist_dir(), help="Chroma persistence directory."),
    persona: str = typer.Option(default_persona(), help="Speaker whose lines become the memories."),
    top_k: int = typer.Option(default_top_k(), help="Memories retrieved per turn."),
    temperature: float = typer.Option(default_temperature(), help="Sampling temperature for both LLM calls."),
    embeddings_provider: str = typer.Option("ollama", help="ollama | openai | sentence-transformers."),
    embedding_model: Optional[str] = typer.Option(None, help="Embedding model (provider default if omitted)."),
    llm_provider: str = typer.Option("ollama", help="ollama | openai."),
    llm_model: Optional[str] = typer.Option(None, help="Chat model (provider default if omitted)."),
    base_url: Optional[str] = typer.Option(None, help="Override the provider base URL."),
    embed_workers: int = typer.Option(1, help="Parallel embedding workers for the first build."),
):
    """Talk to the persona in an interactive terminal session."""
    console.print(BANNER, style="info", highlight=False)
    try:
        pipeline = open_pipeline(
            csv_path, persist_dir, persona, embeddings_provider, embedding_model,
            llm_provider, llm_model, base_url, temperature, top_k, embed_workers,
        )
    except (ConfigurationError, BuildError) as exc:
        fail(exc)

    session = ConversationSession(pipeline)
    console.print("\nAlright, the terminal's on. What do you want, meat-sack?", style="banner")
    console.print("   Ask a question or type 'exit' to give me some peace and quiet.", style="info")

    def read_line() -> str:
        try:
            return console.input("[prompt]\n\\[HUMAN] ➤ [/prompt]")
        except KeyboardInterrupt:
            raise EOFError

    def on_outcome(outcome: TurnOutcome) -> None:
        if outcome.state is SessionState.CLOSED:
            console.print("\nFinally. Shutting down. Go bother someone else.", style="info")
        elif outcome.state is SessionState.FAILED:
            console.print("❌ Something went wrong. Probably your fault.", style="error")
        else:
            console.print("✔ Got it. Here's your chunk of brilliance.", style="success")
            print_answer(outcome.answer or "")

    session.run(read_line, on_outcome)


@app.command()
def ask(
    question: str = typer.Argument(..., help="One question for the persona."),
    csv_path: str = typer.Option(default_csv_path(), help="Transcript CSV with the persona's lines."),
    persist_dir: str = typer.Option(default_persist_dir(), help="Chroma persistence directory."),
    persona: str = typer.Option(default_persona(), help="Speaker whose lines become the memories."),
    top_k: int = typer.Option(default_top_k(), help="Memories retrieved for the answer."),
    temperature: float = typer.Option(default_temperature(), help="Sampling temperature."),
    embeddings_provider: str = typer.Option("ollama", help="ollama | openai | sentence-transformers."),
    embedding_model: Optional[str] = typer.Option(None, help="Embedding model (provider default if omitted)."),
    llm_provider: str = typer.Option("ollama", help="ollama | openai."),
    llm_model: Optional[str] = typer.Option(None, help="Chat model (provider default if omitted)."),
    base_url: Optional[str] = typer.Option(None, help="Override the provider base URL."),
    json_output: bool = typer.Option(True, help="Print structured JSON response."),
):
    """Answer a single question without starting a chat session."""
    try:
        pipeline = open_pipeline(
            csv_path, persist_dir, persona, embeddings_provider, embedding_model,
            llm_provider, llm_model, base_url, temperature, top_k,
        )
    except (ConfigurationError, BuildError) as exc:
        fail(exc)

    try:
        result = pipeline.run([], question)
    except TurnError as exc:
        fail(exc)

    if json_output:
        response = {
            "question": result.question,
            "query": result.query,
            "answer": result.answer,
            "memories": [document_to_dict(doc) for doc in result.documents],
        }
        sys.stdout.write(orjson.dumps(response, option=orjson.OPT_INDENT_2).decode("utf-8") + "\n")
    else:
        print_answer(result.answer)
        table = Table(title="Memories")
        table.add_column("Season", justify="right")
        table.add_column("Episode", justify="right")
        table.add_column("Episode Name")
        table.add_column("Line")
        for doc in result.documents:
            table.add_row(
                str(doc.metadata.get("season", "")),
                str(doc.metadata.get("episode", "")),
                str(doc.metadata.get("episode_name", "")),
                doc.page_content[:100],
            )
        console.print(table)


@app.command()
def index(
    csv_path: str = typer.Option(default_csv_path(), help="Transcript CSV with the persona's lines."),
    persist_dir: str = typer.Option(default_persist_dir(), help="Chroma persistence directory."),
    persona: str = typer.Option(default_persona(), help="Speaker whose lines become the memories."),
    embeddings_provider: str = typer.Option("ollama", help="ollama | openai | sentence-transformers."),
    embedding_model: Optional[str] = typer.Option(None, help="Embedding model (provider default if omitted)."),
    base_url: Optional[str] = typer.Option(None, help="Override the provider base URL."),
    embed_workers: int = typer.Option(1, help="Parallel embedding workers."),
    force: bool = typer.Option(False, help="Rebuild even if a valid index exists."),
):
    """Build the persona index (skipped when a valid one is already persisted)."""
    csv_abs = to_absolute_path(csv_path)
    try:
        embedder = build_embedding_provider(embeddings_provider, embedding_model, base_url)
        manager = VectorIndexManager(persist_dir, embedder, max_workers=embed_workers)
        load = lambda: load_persona_documents(csv_abs, persona)  # noqa: E731
        built = manager.rebuild(load) if force else manager.obtain(load)
    except (ConfigurationError, BuildError) as exc:
        fail(exc)
    console.print(f"[success]Index ready: {built.count()} lines at {manager.storage_path}[/success]")


@app.command()
def corpus(
    csv_path: str = typer.Option(default_csv_path(), help="Transcript CSV with the persona's lines."),
    persona: str = typer.Option(default_persona(), help="Speaker whose lines become the memories."),
    limit: int = typer.Option(20, help="Number of lines to show."),
    json_output: bool = typer.Option(False, help="Print structured JSON output."),
):
    """Preview the persona's filtered lines without indexing."""
    try:
        docs = load_persona_documents(to_absolute_path(csv_path), persona)
    except ConfigurationError as exc:
        fail(exc)

    if json_output:
        out = {
            "persona": persona,
            "total_lines": len(docs),
            "lines": [document_to_dict(doc) for doc in docs[:limit]],
        }
        sys.stdout.write(orjson.dumps(out, option=orjson.OPT_INDENT_2).decode("utf-8") + "\n")
        return

    table = Table(title=f"{persona}: {len(docs)} lines")
    table.add_column("#", justify="right")
    table.add_column("S", justify="right")
    table.add_column("E", justify="right")
    table.add_column("Episode Name")
    table.add_column("Line")
    for i, doc in enumerate(docs[:limit]):
        table.add_row(
            str(i),
            str(doc.metadata["season"]),
            str(doc.metadata["episode"]),
            doc.metadata["episode_name"],
            doc.page_content,
        )
    console.print(table)


@app.command()
def rebuild(
    persist_dir: str = typer.Option(default_persist_dir(), help="Chroma persistence directory."),
    collection: str = typer.Option(DEFAULT_COLLECTION, help="Chroma collection name."),
):
    """Delete the persisted index so the next run rebuilds it."""
    if drop_index(persist_dir, collection):
        console.print(f"[warning]Deleted index[/warning]: {to_absolute_path(persist_dir)}")
    else:
        console.print(f"[error]No index found[/error]: {to_absolute_path(persist_dir)}")


if __name__ == "__main__":
    app()
