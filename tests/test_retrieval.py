from __future__ import annotations

import pytest

from chatarbor.models import KnowledgeSource, TextContent, UrlContent
from chatarbor.retrieval import (
    FallbackRetriever,
    KeywordRetriever,
    VectorRetriever,
    build_retriever,
    extract_keywords,
    keyword_similarity,
)
from chatarbor.vector_store import VectorItem


def _text_source(source_id: str, body: str, title: str | None = None) -> KnowledgeSource:
    return KnowledgeSource.create(TextContent(body=body), source_id=source_id, title=title)


def test_extract_keywords_keeps_words_of_three_or_more_characters():
    assert extract_keywords("How do I write a CV, resume?") == ["how", "write", "resume"]
    assert extract_keywords("a an to") == []


def test_keyword_similarity_weights_title_matches():
    body_only = _text_source("a", "resume advice", title="Career notes")
    titled = _text_source("b", "general advice", title="Resume guide")

    assert keyword_similarity(body_only, ["resume"]) == pytest.approx(0.1)
    assert keyword_similarity(titled, ["resume"]) == pytest.approx(0.2)
    assert keyword_similarity(titled, []) == 0.0


def test_keyword_similarity_is_clamped_to_one():
    source = _text_source("a", "resume " * 40, title="Resume")

    assert keyword_similarity(source, ["resume"]) == 1.0


@pytest.mark.asyncio
async def test_keyword_retriever_ranks_title_match_first(repository):
    repository.save(_text_source("tips", "Keep it to one page.", title="Resume Tips"))
    repository.save(_text_source("other", "Dress codes for interviews vary by industry.", title="Interview attire"))
    repository.save(_text_source("mention", "A resume should be tailored.", title="Applications"))

    results = await KeywordRetriever(repository).search("resume tips")

    assert [result.source.id for result in results] == ["tips", "mention"]
    assert all(0 < result.similarity <= 1 for result in results)


@pytest.mark.asyncio
async def test_keyword_retriever_caps_results(repository):
    for index in range(8):
        repository.save(_text_source(f"s{index}", f"resume example number {index}"))

    results = await KeywordRetriever(repository, top_k=5).search("resume")

    assert len(results) == 5


@pytest.mark.asyncio
async def test_keyword_retriever_scores_scraped_body_and_url_title(repository):
    source = KnowledgeSource.create(
        UrlContent(url="https://jobs.example.com/resume", body="Start your resume with a summary."),
        source_id="url-1",
    )
    repository.save(source)

    results = await KeywordRetriever(repository).search("resume")

    assert results[0].source.id == "url-1"
    assert results[0].similarity == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_vector_retriever_aggregates_chunks_per_source(repository, vector_store):
    repository.save(_text_source("a", "resume writing guide\n\nresume summary"))
    repository.save(_text_source("b", "salary negotiation"))
    await vector_store.upsert(
        [
            VectorItem(id="a:0", text="resume writing guide", metadata={"source_id": "a"}),
            VectorItem(id="a:1", text="resume summary", metadata={"source_id": "a"}),
            VectorItem(id="b:0", text="salary negotiation", metadata={"source_id": "b"}),
            VectorItem(id="ghost:0", text="resume writing guide", metadata={"source_id": "ghost"}),
        ]
    )

    results = await VectorRetriever(vector_store, repository, min_similarity=0.5).search("resume writing guide")

    assert [result.source.id for result in results] == ["a"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].passage == "resume writing guide"


@pytest.mark.asyncio
async def test_fallback_retriever_uses_keywords_when_vectors_unreachable(repository, vector_store, fake_chroma):
    repository.save(_text_source("tips", "Keep it to one page.", title="Resume Tips"))
    fake_chroma.fail = True
    retriever = FallbackRetriever(
        VectorRetriever(vector_store, repository),
        KeywordRetriever(repository),
    )

    results = await retriever.search("resume tips")

    assert retriever.name == "vector"
    assert [result.source.id for result in results] == ["tips"]


def test_build_retriever_picks_strategy_from_configuration(settings, repository, vector_store):
    assert build_retriever(settings, repository, None).name == "keyword"
    assert isinstance(build_retriever(settings, repository, vector_store), FallbackRetriever)
