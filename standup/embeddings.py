"""
embeddings.py

Task embeddings: generation through a pluggable embedder, change detection by
content hash, and cosine similarity search over every embedded task.

Embeddings live on the task record itself (`embedding` + `embedding_metadata`),
so the index holds no state of its own beyond the store and the embedder.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from standup.config import config
from standup.errors import ConfigurationError
from standup.task_schema import TaskRecord, utc_now

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 3


# ── Embedders ─────────────────────────────────────────────────────────────────

class SentenceTransformerEmbedder:
    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        """
        Args:
            model_name: The SentenceTransformer model to use.
        """
        try:
            from sentence_transformers import SentenceTransformer
            self.model = SentenceTransformer(model_name)
        except ImportError:
            raise ImportError("sentence-transformers is not installed. Please install it with `pip install sentence-transformers`.")
        self.model_name = model_name

    def encode(self, text: str) -> List[float]:
        return self.model.encode([text])[0].tolist()


class OpenAIEmbedder:
    def __init__(self, client=None, model_name: str = "text-embedding-3-small"):
        if client is None:
            from openai import OpenAI
            api_key = config['openai_api_key']
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY is required for the openai embedding backend.")
            client = OpenAI(api_key=api_key, timeout=config['timeout'])
        self.client = client
        self.model_name = model_name

    def encode(self, text: str) -> List[float]:
        response = self.client.embeddings.create(model=self.model_name, input=text)
        return list(response.data[0].embedding)


def build_embedder(backend: Optional[str] = None, model_name: Optional[str] = None):
    backend = (backend or config['embedding_backend']).lower()
    model_name = model_name or config['embedding_model']
    if backend == "openai":
        return OpenAIEmbedder(model_name=model_name or "text-embedding-3-small")
    if backend in ("sentence-transformers", "sentence_transformers", "local"):
        return SentenceTransformerEmbedder(model_name or "all-MiniLM-L6-v2")
    raise ConfigurationError(f"Unknown EMBEDDING_BACKEND '{backend}'")


# ── Text helpers ──────────────────────────────────────────────────────────────

def content_hash(text: str) -> str:
    return hashlib.sha256((text or "").strip().encode("utf-8")).hexdigest()


def build_embedding_text(text: str, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Enriches the raw task text with its assignee, type, status and title so
    that tasks with similar wording but different owners separate in vector space.
    """
    context = context or {}
    parts = [text]
    assignee = context.get("assignee")
    if assignee and assignee != "TBD":
        parts.append(f"Assigned to: {assignee}")
    if context.get("type"):
        parts.append(f"Type: {context['type']}")
    if context.get("status"):
        parts.append(f"Status: {context['status']}")
    title = context.get("title")
    if title and title != text:
        parts.insert(0, f"Title: {title}")
    return " | ".join(parts)


def safe_cosine(a, b) -> float:
    """Numerically safe cosine similarity. Mismatched lengths score 0."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape or a.size == 0:
        return 0.0
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def is_stale(task: TaskRecord) -> bool:
    if task.embedding is None or task.embedding_metadata is None:
        return True
    return task.embedding_metadata.text_hash != content_hash(task.embeddable_text())


@dataclass
class SimilarTask:
    task_id: str
    similarity: float
    assignee: str
    type: str
    status: str
    title: str
    description: str


# ── Index ─────────────────────────────────────────────────────────────────────

class TaskEmbeddingIndex:

    def __init__(self, store, embedder):
        self.store = store
        self.embedder = embedder

    @property
    def model_name(self) -> str:
        return getattr(self.embedder, "model_name", "unknown")

    def upsert(self, task_id: str, text: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Generates and stores the embedding for task_id unless the stored hash
        already matches text. Returns False instead of raising on any failure.
        """
        text = (text or "").strip()
        if len(text) < MIN_TEXT_LENGTH:
            logger.warning("[Embeddings] Skipping %s: insufficient text (%d chars)", task_id, len(text))
            return False

        try:
            located = self.store.find_task(task_id)
        except Exception as e:
            logger.error("[Embeddings] Lookup failed for %s: %s", task_id, e)
            return False
        if located is None:
            logger.warning("[Embeddings] Task %s not found; embedding not stored", task_id)
            return False

        text_hash = content_hash(text)
        metadata = located.task.embedding_metadata
        if located.task.embedding is not None and metadata is not None and metadata.text_hash == text_hash:
            logger.debug("[Embeddings] %s unchanged; skipping", task_id)
            return True

        try:
            vector = self.embedder.encode(build_embedding_text(text, context))
        except Exception as e:
            logger.error("[Embeddings] Embedder failed for %s: %s", task_id, e)
            return False

        now = utc_now()
        fields = {
            "embedding": [float(x) for x in vector],
            "embedding_metadata": {
                "model": self.model_name,
                "text_hash": text_hash,
                "generated_at": now,
                "last_updated": now,
                "dimensions": len(vector),
            },
        }
        try:
            stored = self.store.set_task_fields(task_id, fields)
        except Exception as e:
            logger.error("[Embeddings] Write failed for %s: %s", task_id, e)
            return False
        if stored:
            logger.info("[Embeddings] Stored %d-dim embedding for %s (%s)", len(vector), task_id, text_hash[:8])
        return stored

    def query(self, text: str, context: Optional[Dict[str, Any]] = None,
              top_k: int = 5, threshold: float = 0.75,
              assignee: Optional[str] = None) -> List[SimilarTask]:
        """
        Ranks every embedded task by cosine similarity to text. Results below
        threshold are dropped; ties keep store order. With assignee set, only
        that participant's tasks are ranked, before top_k is applied.
        """
        query_vector = np.asarray(self.embedder.encode(build_embedding_text(text, context)), dtype=float)

        results: List[SimilarTask] = []
        for located in self.store.iter_tasks():
            task = located.task
            if assignee is not None and task.assignee != assignee:
                continue
            if not task.embedding or len(task.embedding) != len(query_vector):
                continue
            similarity = safe_cosine(query_vector, task.embedding)
            if similarity < threshold:
                continue
            results.append(SimilarTask(
                task_id=task.ticket_id,
                similarity=similarity,
                assignee=task.assignee,
                type=task.type,
                status=task.status,
                title=task.title,
                description=task.description,
            ))

        # list.sort is stable
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:top_k]

    def invalidate(self, task_id: str) -> bool:
        located = self.store.find_task(task_id)
        if located is None or located.task.embedding is None:
            return False
        removed = self.store.unset_task_fields(task_id, ["embedding", "embedding_metadata"])
        if removed:
            logger.info("[Embeddings] Removed embedding from %s", task_id)
        return removed

    def is_stale(self, task: TaskRecord) -> bool:
        return is_stale(task)

    def stats(self) -> Dict[str, Any]:
        total = 0
        embedded = 0
        models: Dict[str, int] = {}
        oldest: Optional[str] = None
        newest: Optional[str] = None
        for located in self.store.iter_tasks():
            total += 1
            task = located.task
            if task.embedding is None or task.embedding_metadata is None:
                continue
            embedded += 1
            meta = task.embedding_metadata
            models[meta.model] = models.get(meta.model, 0) + 1
            # ISO-8601 UTC strings compare chronologically
            if oldest is None or meta.generated_at < oldest:
                oldest = meta.generated_at
            if newest is None or meta.generated_at > newest:
                newest = meta.generated_at

        return {
            "total_tasks": total,
            "tasks_with_embeddings": embedded,
            "coverage": f"{(embedded / total * 100):.1f}%" if total else "0%",
            "models": models,
            "oldest": oldest,
            "newest": newest,
        }
