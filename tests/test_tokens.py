from kb_ingest.index.chunker import chunk_text
from kb_ingest.index.tokens import estimate_tokens


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcdefg") == 2
    assert estimate_tokens("abcdefgh") == 3
    assert estimate_tokens("x" * 3500) == 1000


def test_chunks_carry_estimates() -> None:
    chunks = chunk_text("Plain sentence for counting. " * 80)
    assert chunks
    assert all(chunk.token_count == estimate_tokens(chunk.content) for chunk in chunks)
