from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import hashlib
import struct

from kb_ingest.config import Settings
from kb_ingest.index.tokens import estimate_tokens
from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("embed")


@dataclass
class EmbeddingResult:
    vector: list[float]
    provider: str


class EmbeddingProvider:
    name = "base"

    def embed(self, text: str) -> EmbeddingResult:
        raise NotImplementedError(f"{type(self).__name__} cannot embed text")

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text).vector for text in texts]

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)


class DummyEmbeddingProvider(EmbeddingProvider):
    """Hash-seeded pseudo vectors in [0, 1); no network, for tests and dry runs."""

    name = "dummy"

    def embed(self, text: str) -> EmbeddingResult:
        values: list[float] = []
        block = 0
        while len(values) < Settings.embeddings_dim:
            digest = hashlib.sha256(f"{block}:{text}".encode("utf-8")).digest()
            values.extend(word / 2**32 for word in struct.unpack("8I", digest))
            block += 1
        return EmbeddingResult(vector=values[: Settings.embeddings_dim], provider=self.name)


def _setting(value: str | None, env_name: str) -> str:
    if not value:
        raise RuntimeError(f"{env_name} must be set for Hugging Face embeddings")
    return value


def _mean_pool(rows: list[list[float]]) -> list[float]:
    """Average token vectors into one sentence vector."""
    if not rows:
        return []
    if len({len(row) for row in rows}) != 1:
        raise ValueError("Token vectors differ in length")
    return [sum(column) / len(rows) for column in zip(*rows)]


def _to_vector(output: object) -> list[float]:
    if hasattr(output, "tolist"):
        output = output.tolist()
    if isinstance(output, list) and output:
        if isinstance(output[0], list):
            return _mean_pool(output)  # type: ignore[arg-type]
        return [float(value) for value in output]  # type: ignore[arg-type]
    raise RuntimeError("Unexpected Hugging Face embedding response")


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    name = "huggingface"

    def __init__(self) -> None:
        try:
            from huggingface_hub import InferenceClient
        except ImportError as exc:
            raise RuntimeError(
                "Install the 'huggingface' extra to use EMBEDDINGS_PROVIDER=huggingface"
            ) from exc
        self._model = _setting(
            Settings.huggingface_embedding_model, "HUGGINGFACE_EMBEDDINGS_MODEL"
        )
        self._client = InferenceClient(
            api_key=_setting(Settings.huggingface_api_key, "HUGGINGFACE_API_KEY"),
            provider=Settings.huggingface_provider,
        )

    def embed(self, text: str) -> EmbeddingResult:
        output = self._client.feature_extraction(text, model=self._model)
        return EmbeddingResult(vector=_to_vector(output), provider=self.name)


def normalize_embedding(vector: list[float], dim: int) -> list[float]:
    """Cut ``vector`` to ``dim`` values; shorter vectors are an error."""
    if len(vector) < dim:
        raise ValueError(f"Expected {dim} dimensions, provider returned {len(vector)}")
    return vector[:dim]


def content_hash(text: str) -> str:
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


def embed_texts(
    provider: EmbeddingProvider,
    texts: list[str],
    *,
    batch_size: int | None = None,
    dim: int | None = None,
) -> list[list[float]]:
    """Embed ``texts`` in order, calling the provider once per unique text.

    Texts that are equal after trimming and lowercasing share one vector.
    """
    batch_size = max(1, batch_size or Settings.embeddings_batch_size)
    dim = dim or Settings.embeddings_dim
    hashes = [content_hash(text) for text in texts]
    unique: dict[str, str] = {}
    for digest, text in zip(hashes, texts):
        unique.setdefault(digest, text)
    duplicates = len(texts) - len(unique)
    if duplicates:
        log_event("dedupe", texts=len(texts), duplicates=duplicates)

    digests = list(unique)
    vectors: dict[str, list[float]] = {}
    for offset in range(0, len(digests), batch_size):
        batch = digests[offset : offset + batch_size]
        embedded = provider.embed_batch([unique[digest] for digest in batch])
        if len(embedded) != len(batch):
            raise RuntimeError(
                f"Provider returned {len(embedded)} vectors for {len(batch)} texts"
            )
        for digest, vector in zip(batch, embedded):
            vectors[digest] = normalize_embedding(vector, dim)
    return [vectors[digest] for digest in hashes]


@lru_cache(maxsize=1)
def get_embedding_provider() -> EmbeddingProvider:
    provider = Settings.embeddings_provider.lower()
    if provider == "dummy":
        return DummyEmbeddingProvider()
    if provider in {"huggingface", "hf"}:
        return HuggingFaceEmbeddingProvider()
    raise ValueError(f"Unknown embedding provider: {provider}")
