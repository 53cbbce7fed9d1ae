"""Document retrieval: chunk windows, embedding cache, top-k lookup."""

import numpy as np
import pytest

from conftest import FakeEmbedder, WordTokenizer
from memory.errors import UnsupportedFormatError
from memory.retrieval import (
    CONTEXT_HEADING,
    Chunk,
    EmbeddingCache,
    RetrievalPipeline,
    build_context_block,
    chunk,
    chunk_spans,
    load_document,
)

TOPICS = (
    "alpha beta gamma delta "
    "orchard apple pear plum "
    "engine piston valve crank"
)


def _pipeline(tmp_path=None, embedder=None, chunk_size=4, overlap=0):
    cache = EmbeddingCache(tmp_path / "cache" if tmp_path else None)
    return RetrievalPipeline(
        embedder or FakeEmbedder(), WordTokenizer(), cache=cache, chunk_size=chunk_size, overlap=overlap
    )


def test_default_windows_over_1280_tokens():
    spans = chunk_spans(1280)
    assert [s for s, _ in spans] == [0, 384, 768]
    assert spans[-1][1] == 1280
    assert all(e - s <= 512 for s, e in spans)


def test_windows_cover_short_and_empty_documents():
    assert chunk_spans(0) == []
    assert chunk_spans(100) == [(0, 100)]
    assert chunk_spans(512) == [(0, 512)]


@pytest.mark.parametrize("size,overlap", [(0, 0), (10, 10), (10, -1), (10, 12)])
def test_invalid_window_parameters(size, overlap):
    with pytest.raises(ValueError):
        chunk_spans(100, size, overlap)
    with pytest.raises(ValueError):
        RetrievalPipeline(FakeEmbedder(), WordTokenizer(), chunk_size=size, overlap=overlap)


def test_chunk_text_and_overlap(tokenizer):
    document = " ".join(f"w{i}" for i in range(10))
    chunks = chunk(document, tokenizer, chunk_size=4, overlap=1, source="doc.txt")
    assert [(c.start, c.end) for c in chunks] == [(0, 4), (3, 7), (6, 10)]
    assert chunks[1].text == "w3 w4 w5 w6"
    assert chunks[0].source == "doc.txt"
    assert len(chunks[2]) == 4


def test_load_document(tmp_path):
    text = tmp_path / "notes.txt"
    text.write_text("plain text, héllo", encoding="utf-8")
    assert load_document(text) == "plain text, héllo"

    binary = tmp_path / "image.png"
    binary.write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    with pytest.raises(UnsupportedFormatError):
        load_document(binary)

    latin = tmp_path / "latin.txt"
    latin.write_bytes("caf\xe9".encode("latin-1"))
    with pytest.raises(UnsupportedFormatError):
        load_document(latin)


def test_retrieve_nearest_chunks_first():
    pipeline = _pipeline()
    index = pipeline.index_documents(pipeline.chunk(TOPICS, source="topics"))
    assert len(index) == 3

    results = pipeline.retrieve(index, "orchard apple pear", k=2)
    assert len(results) == 2
    assert results[0].text == "orchard apple pear plum"

    assert [c.text for c in pipeline.retrieve(index, "engine valve", k=1)] == ["engine piston valve crank"]


def test_retrieve_from_empty_index():
    pipeline = _pipeline()
    index = pipeline.index_documents([])
    assert pipeline.retrieve(index, "anything") == []


def test_cache_hit_skips_embedder(tmp_path):
    embedder = FakeEmbedder()
    pipeline = _pipeline(tmp_path, embedder)
    pipeline.index_documents(pipeline.chunk(TOPICS))
    assert len(embedder.calls) == 3

    pipeline.index_documents(pipeline.chunk(TOPICS))
    assert len(embedder.calls) == 3


def test_cache_persists_and_clears(tmp_path):
    cache_dir = tmp_path / "cache"
    first = EmbeddingCache(cache_dir)
    vector = np.arange(4, dtype=np.float32)
    first.put("some chunk", vector)

    second = EmbeddingCache(cache_dir)
    assert second.get("other chunk") is None
    np.testing.assert_array_equal(second.get("some chunk"), vector)

    assert second.clear() == 1
    assert len(second) == 0
    assert list(cache_dir.glob("*.npy")) == []
    assert EmbeddingCache(cache_dir).get("some chunk") is None


def test_cache_is_separated_by_model(tmp_path):
    cache_dir = tmp_path / "cache"
    EmbeddingCache(cache_dir, model_name="model-a").put("same chunk", np.ones(4, dtype=np.float32))

    assert EmbeddingCache(cache_dir, model_name="model-b").get("same chunk") is None
    assert EmbeddingCache(cache_dir, model_name="model-a").get("same chunk") is not None


def test_pipeline_reembeds_after_model_change(tmp_path):
    pipeline = _pipeline(tmp_path, FakeEmbedder())
    pipeline.cache.model_name = "model-a"
    pipeline.index_documents(pipeline.chunk(TOPICS))

    second = FakeEmbedder()
    cache = EmbeddingCache(tmp_path / "cache", model_name="model-b")
    RetrievalPipeline(second, WordTokenizer(), cache=cache, chunk_size=4, overlap=0).index_documents(
        pipeline.chunk(TOPICS)
    )
    assert len(second.calls) == 3


def test_default_cache_follows_embedder_model():
    embedder = FakeEmbedder()
    embedder.model_name = "custom-model"
    assert RetrievalPipeline(embedder, WordTokenizer()).cache.model_name == "custom-model"


def test_unembeddable_chunk_is_skipped():
    embedder = FakeEmbedder(fail_on={"orchard apple pear plum"})
    pipeline = _pipeline(embedder=embedder)
    index = pipeline.index_documents(pipeline.chunk(TOPICS))
    assert len(index) == 2
    assert all("orchard" not in c.text for c in index.chunks.values())


def test_query_embedding_failure_returns_no_context(caplog):
    embedder = FakeEmbedder(fail_on={"what about apples"})
    pipeline = _pipeline(embedder=embedder)
    index = pipeline.index_documents(pipeline.chunk(TOPICS))
    assert pipeline.retrieve(index, "what about apples") == []
    assert "without document context" in caplog.text


def test_index_files_leaves_out_unsupported(tmp_path):
    good = tmp_path / "good.txt"
    good.write_text(TOPICS)
    bad = tmp_path / "blob.bin"
    bad.write_bytes(b"\x00\x01\x02")
    pipeline = _pipeline()
    index = pipeline.index_files([good, bad])
    assert len(index) == 3
    assert {c.source for c in index.chunks.values()} == {str(good)}


def test_context_block():
    assert build_context_block([]) == ""
    block = build_context_block([Chunk(0, 2, "first part"), Chunk(2, 4, "second part")])
    assert block.startswith(CONTEXT_HEADING)
    assert block.index("first part") < block.index("second part")
