"""Index subpackage: chunking, token estimates and embeddings."""

from kb_ingest.index.chunker import (
    ChunkOptions,
    TextChunk,
    chunk_page,
    chunk_stats,
    chunk_text,
    clean_text,
)
from kb_ingest.index.embeddings import (
    DummyEmbeddingProvider,
    EmbeddingProvider,
    EmbeddingResult,
    HuggingFaceEmbeddingProvider,
    embed_texts,
    get_embedding_provider,
    normalize_embedding,
)
from kb_ingest.index.tokens import estimate_tokens

__all__ = [
    # chunker
    "ChunkOptions",
    "TextChunk",
    "chunk_page",
    "chunk_stats",
    "chunk_text",
    "clean_text",
    # embeddings
    "DummyEmbeddingProvider",
    "EmbeddingProvider",
    "EmbeddingResult",
    "HuggingFaceEmbeddingProvider",
    "embed_texts",
    "get_embedding_provider",
    "normalize_embedding",
    # tokens
    "estimate_tokens",
]
