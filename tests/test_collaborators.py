"""
Tests for the external collaborators: hashing, arXiv metadata, PDF extraction
and paper analysis.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import arxiv
import pytest

from sciproto.collaborators import (
    AnalysisError,
    AnthropicPaperAnalyzer,
    AnthropicTextExtractor,
    ExtractionError,
    MetadataNotFoundError,
    PaperAnalysis,
    analysis_tool,
    content_hash,
    fetch_paper_metadata,
    paper_from_result,
)
from sciproto.prompts import RECORD_ANALYSIS_TOOL_NAME


def make_result():
    """A stand-in for arxiv.Result with the fields the mapping reads."""
    result = MagicMock()
    result.entry_id = "http://arxiv.org/abs/1706.03762v7"
    result.get_short_id.return_value = "1706.03762v7"
    result.title = "Attention Is All\n      You Need"
    result.authors = [SimpleNamespace(name="Ashish Vaswani"), SimpleNamespace(name="Noam Shazeer")]
    result.summary = "  The dominant sequence transduction models are based on\n  complex recurrent networks.  "
    result.published = datetime(2017, 6, 12, 17, 57, 34, tzinfo=timezone.utc)
    result.updated = datetime(2023, 8, 2, 0, 41, 18, tzinfo=timezone.utc)
    result.categories = ["cs.CL", "cs.LG"]
    result.primary_category = "cs.CL"
    result.pdf_url = "http://arxiv.org/pdf/1706.03762v7"
    return result


def make_arxiv_client(*results, error=None):
    client = MagicMock()
    if error is not None:
        client.results.side_effect = error
    else:
        client.results.return_value = iter(results)
    return client


ANALYSIS_PAYLOAD = {
    "title": "Attention Is All You Need",
    "authors": ["Ashish Vaswani"],
    "publication_year": "2017",
    "summary": "Self-attention replaces recurrence.",
    "breakthrough_score": 92,
    "breakthrough_reasoning": "Defined the transformer.",
    "key_claims": ["Attention alone suffices"],
    "testable_hypotheses": [],
    "key_equations": [],
    "simulation_possibilities": [],
    "field": "Machine Learning",
    "related_fields": ["NLP"],
    "limitations": ["Quadratic cost"],
    "difficulty_to_understand": "Intermediate",
    "prerequisites": ["Linear algebra"],
}


class TestContentHash:
    def test_sha256_hex(self):
        assert content_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_differs_by_content(self):
        assert content_hash(b"a") != content_hash(b"b")


class TestPaperFromResult:
    """Test mapping an arxiv result onto PaperMetadata."""

    def test_maps_fields(self):
        paper = paper_from_result(make_result())

        assert paper.id == "1706.03762v7"
        assert paper.title == "Attention Is All You Need"
        assert paper.authors == ["Ashish Vaswani", "Noam Shazeer"]
        assert paper.summary.startswith("The dominant sequence transduction models")
        assert paper.published == "2017-06-12T17:57:34+00:00"
        assert paper.updated.startswith("2023-08-02")
        assert paper.categories == ["cs.CL", "cs.LG"]
        assert paper.primary_category == "cs.CL"
        assert paper.pdf_url == "http://arxiv.org/pdf/1706.03762v7"
        assert paper.abs_url == "http://arxiv.org/abs/1706.03762v7"

    def test_missing_dates_are_empty(self):
        result = make_result()
        result.updated = None
        assert paper_from_result(result).updated == ""


class TestFetchPaperMetadata:
    """Test the lookup through a stubbed arxiv client."""

    @pytest.mark.asyncio
    async def test_fetch(self):
        client = make_arxiv_client(make_result())

        paper = await fetch_paper_metadata("1706.03762", client=client)

        assert paper.title == "Attention Is All You Need"
        search = client.results.call_args.args[0]
        assert isinstance(search, arxiv.Search)
        assert search.id_list == ["1706.03762"]
        assert search.max_results == 1

    @pytest.mark.asyncio
    async def test_unknown_id_is_not_found(self):
        client = make_arxiv_client()
        with pytest.raises(MetadataNotFoundError):
            await fetch_paper_metadata("9999.99999", client=client)

    @pytest.mark.asyncio
    async def test_bad_request_is_not_found(self):
        client = make_arxiv_client(error=arxiv.HTTPError("http://export.arxiv.org/api/query", 0, 400))
        with pytest.raises(MetadataNotFoundError):
            await fetch_paper_metadata("1706.03762", client=client)

    @pytest.mark.asyncio
    async def test_server_error_propagates(self):
        client = make_arxiv_client(error=arxiv.HTTPError("http://export.arxiv.org/api/query", 2, 503))
        with pytest.raises(arxiv.HTTPError):
            await fetch_paper_metadata("1706.03762", client=client)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arxiv_id", ["", "   ", "1706.03762; rm -rf /", "<script>"])
    async def test_invalid_ids_rejected(self, arxiv_id):
        client = make_arxiv_client(make_result())
        with pytest.raises(MetadataNotFoundError):
            await fetch_paper_metadata(arxiv_id, client=client)
        client.results.assert_not_called()


class TestAnthropicTextExtractor:
    """Test PDF transcription through a mocked SDK client."""

    def make_client(self, *texts):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text=t) for t in texts]
        ))
        return client

    @pytest.mark.asyncio
    async def test_extracts_text(self):
        client = self.make_client("Abstract. ", "We propose a method.")
        extractor = AnthropicTextExtractor(client=client, model="claude-test")

        text = await extractor.extract(b"%PDF-1.4 fake")

        assert text == "Abstract. We propose a method."
        request = client.messages.create.await_args.kwargs
        assert request["model"] == "claude-test"
        document = request["messages"][0]["content"][0]
        assert document["type"] == "document"
        assert document["source"]["media_type"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_empty_document(self):
        extractor = AnthropicTextExtractor(client=self.make_client("x"))
        with pytest.raises(ExtractionError):
            await extractor.extract(b"")

    @pytest.mark.asyncio
    async def test_no_text_returned(self):
        extractor = AnthropicTextExtractor(client=self.make_client("   "))
        with pytest.raises(ExtractionError):
            await extractor.extract(b"%PDF")


class TestAnthropicPaperAnalyzer:
    """Test structured analysis through a mocked SDK client."""

    def make_client(self, *blocks):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=list(blocks)))
        return client

    def tool_block(self, payload, name=RECORD_ANALYSIS_TOOL_NAME):
        return SimpleNamespace(type="tool_use", name=name, input=payload, id="toolu_1")

    @pytest.mark.asyncio
    async def test_reads_forced_tool_call(self):
        client = self.make_client(self.tool_block(ANALYSIS_PAYLOAD))
        analyzer = AnthropicPaperAnalyzer(client=client, model="claude-test")

        analysis = await analyzer.analyze("Attention paper text")

        assert isinstance(analysis, PaperAnalysis)
        assert analysis.breakthrough_score == 92
        assert analysis.difficulty_to_understand == "Intermediate"
        request = client.messages.create.await_args.kwargs
        assert request["model"] == "claude-test"
        assert request["tool_choice"] == {"type": "tool", "name": RECORD_ANALYSIS_TOOL_NAME}
        assert request["tools"][0]["name"] == RECORD_ANALYSIS_TOOL_NAME
        assert "Attention paper text" in request["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_missing_tool_call(self):
        client = self.make_client(SimpleNamespace(type="text", text="Here is my analysis"))
        with pytest.raises(AnalysisError):
            await AnthropicPaperAnalyzer(client=client).analyze("text")

    @pytest.mark.asyncio
    async def test_other_tool_is_ignored(self):
        client = self.make_client(self.tool_block(ANALYSIS_PAYLOAD, name="render_prototype"))
        with pytest.raises(AnalysisError):
            await AnthropicPaperAnalyzer(client=client).analyze("text")

    @pytest.mark.asyncio
    async def test_invalid_payload(self):
        payload = dict(ANALYSIS_PAYLOAD, breakthrough_score=500)
        client = self.make_client(self.tool_block(payload))
        with pytest.raises(AnalysisError):
            await AnthropicPaperAnalyzer(client=client).analyze("text")

    @pytest.mark.asyncio
    async def test_empty_text(self):
        client = self.make_client(self.tool_block(ANALYSIS_PAYLOAD))
        with pytest.raises(AnalysisError):
            await AnthropicPaperAnalyzer(client=client).analyze("   ")
        client.messages.create.assert_not_called()

    def test_tool_schema_comes_from_model(self):
        tool = analysis_tool()
        assert tool["input_schema"]["properties"]["breakthrough_score"]["maximum"] == 100
        assert "simulation_possibilities" in tool["input_schema"]["properties"]
