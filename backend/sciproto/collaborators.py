"""
External collaborators consumed by the backend.

- Text extraction: PDF bytes -> plain text (Claude reads the PDF as a document block)
- Content hashing: cache key for uploaded papers
- Paper analysis: paper text -> PaperAnalysis (Claude answers through a forced tool call)
- Paper metadata: arXiv lookup by identifier via the arxiv client
"""

import asyncio
import base64
import hashlib
import logging
import re
from datetime import datetime
from typing import List, Literal, Optional, Protocol

import anthropic
import arxiv
from pydantic import BaseModel, Field, ValidationError

from .config import get_settings
from .prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    EXTRACTION_INSTRUCTION,
    RECORD_ANALYSIS_TOOL_NAME,
    build_analysis_prompt,
)

logger = logging.getLogger(__name__)

_ARXIV_ID_RE = re.compile(r"^[A-Za-z0-9.\-/]+(v\d+)?$")


class ExtractionError(Exception):
    """Raised when text could not be extracted from a document."""
    pass


class AnalysisError(Exception):
    """Raised when a paper could not be analyzed."""
    pass


class MetadataNotFoundError(Exception):
    """Raised when a paper identifier has no metadata entry."""
    pass


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest used as the cache key for uploads."""
    return hashlib.sha256(data).hexdigest()


# =============================================================================
# TEXT EXTRACTION
# =============================================================================


class TextExtractor(Protocol):
    async def extract(self, data: bytes) -> str:
        ...


class AnthropicTextExtractor:
    """Transcribes a PDF by sending it to Claude as a base64 document block."""

    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None, model: Optional[str] = None):
        settings = get_settings()
        self._client = client
        self._api_key = settings.anthropic_api_key
        self.model = model or settings.model
        self.max_tokens = settings.max_tokens

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise ExtractionError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def extract(self, data: bytes) -> str:
        if not data:
            raise ExtractionError("Empty document")

        client = self._get_client()
        encoded = base64.standard_b64encode(data).decode("ascii")

        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "document",
                            "source": {
                                "type": "base64",
                                "media_type": "application/pdf",
                                "data": encoded,
                            },
                        },
                        {"type": "text", "text": EXTRACTION_INSTRUCTION},
                    ],
                }],
            )
        except anthropic.APIError as e:
            logger.error(f"PDF extraction request failed: {e}", exc_info=True)
            raise ExtractionError(f"Text extraction failed: {e}") from e

        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", None) == "text"
        ).strip()

        if not text:
            raise ExtractionError("No text could be extracted from the document")

        logger.info(f"Extracted {len(text)} characters from {len(data)} byte document")
        return text


# =============================================================================
# PAPER ANALYSIS
# =============================================================================


class TestableHypothesis(BaseModel):
    hypothesis: str = Field(description="A specific, testable claim from the paper")
    how_to_test: str = Field(description="How this could be validated in a prototype")
    expected_outcome: str = Field(description="What result would confirm the hypothesis")


class EquationVariable(BaseModel):
    name: str
    description: str
    typical_range: Optional[str] = None


class KeyEquation(BaseModel):
    name: str = Field(description="Name or identifier for the equation")
    latex: str = Field(description="The equation in plain text (no LaTeX delimiters)")
    description: str = Field(description="What this equation represents")
    variables: List[EquationVariable] = Field(
        default_factory=list, description="Variables in the equation that could be adjusted"
    )


class SimulationPossibility(BaseModel):
    title: str = Field(description="Title of the potential simulation")
    description: str = Field(description="Description of what the user would interact with")
    complexity: Literal["Low", "Medium", "High"] = Field(description="Estimated development complexity")
    variables: List[str] = Field(default_factory=list, description="List of adjustable parameters")
    expected_insights: str = Field(description="What users will learn from this simulation")
    visualization_type: Literal["chart", "animation", "interactive", "3d", "diagram"] = Field(
        description="Best visualization approach"
    )


class PaperAnalysis(BaseModel):
    """Structured breakdown of a paper, aimed at what can be prototyped."""
    title: str = Field(description="The title of the research paper")
    authors: List[str] = Field(default_factory=list, description="List of author names if available")
    publication_year: Optional[str] = Field(default=None, description="Year of publication if mentioned")

    summary: str = Field(description="A clear, accessible summary of the paper (2-3 sentences)")
    breakthrough_score: float = Field(
        ge=1, le=100, description="Score 1-100 indicating how novel/impactful this paper could be"
    )
    breakthrough_reasoning: str = Field(description="Brief explanation of why this score was given")

    key_claims: List[str] = Field(
        default_factory=list, description="List of 3-5 key scientific claims made in the paper"
    )
    testable_hypotheses: List[TestableHypothesis] = Field(default_factory=list)
    key_equations: List[KeyEquation] = Field(default_factory=list)
    simulation_possibilities: List[SimulationPossibility] = Field(default_factory=list)

    field: str = Field(description="Primary research field (e.g., Machine Learning, Physics, Biology)")
    related_fields: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)

    difficulty_to_understand: Literal["Beginner", "Intermediate", "Advanced", "Expert"] = Field(
        description="How accessible is this paper"
    )
    prerequisites: List[str] = Field(default_factory=list)


def analysis_tool() -> dict:
    """The forced tool whose input is the analysis."""
    return {
        "name": RECORD_ANALYSIS_TOOL_NAME,
        "description": "Record the structured analysis of the research paper.",
        "input_schema": PaperAnalysis.model_json_schema(),
    }


class PaperAnalyzer(Protocol):
    async def analyze(self, text: str) -> PaperAnalysis:
        ...


class AnthropicPaperAnalyzer:
    """Analyzes paper text with Claude, reading the answer from a forced tool call."""

    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None, model: Optional[str] = None):
        settings = get_settings()
        self._client = client
        self._api_key = settings.anthropic_api_key
        self.model = model or settings.model
        self.max_tokens = settings.max_tokens

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise AnalysisError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def analyze(self, text: str) -> PaperAnalysis:
        if not text or not text.strip():
            raise AnalysisError("No paper text to analyze")

        client = self._get_client()

        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=ANALYSIS_SYSTEM_PROMPT,
                tools=[analysis_tool()],
                tool_choice={"type": "tool", "name": RECORD_ANALYSIS_TOOL_NAME},
                messages=[{"role": "user", "content": build_analysis_prompt(text)}],
            )
        except anthropic.APIError as e:
            logger.error(f"Paper analysis request failed: {e}", exc_info=True)
            raise AnalysisError(f"Paper analysis failed: {e}") from e

        payload = next(
            (
                getattr(block, "input", None) for block in response.content
                if getattr(block, "type", None) == "tool_use"
                and getattr(block, "name", None) == RECORD_ANALYSIS_TOOL_NAME
            ),
            None,
        )
        if not isinstance(payload, dict):
            raise AnalysisError("The model did not return an analysis")

        try:
            analysis = PaperAnalysis.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Analysis failed validation: {e}")
            raise AnalysisError(f"The analysis did not match the expected shape: {e}") from e

        logger.info(
            f"Analyzed paper '{analysis.title[:60]}' "
            f"({len(analysis.simulation_possibilities)} simulation ideas)"
        )
        return analysis


# =============================================================================
# PAPER METADATA
# =============================================================================


class PaperMetadata(BaseModel):
    id: str
    title: str
    authors: List[str] = Field(default_factory=list)
    summary: str = ""
    published: str = ""
    updated: str = ""
    categories: List[str] = Field(default_factory=list)
    primary_category: str = ""
    pdf_url: str = ""
    abs_url: str = ""


def _clean(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def _isoformat(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def paper_from_result(result: arxiv.Result) -> PaperMetadata:
    """Map an arxiv search result onto PaperMetadata."""
    return PaperMetadata(
        id=result.get_short_id(),
        title=_clean(result.title),
        authors=[author.name for author in result.authors if author.name],
        summary=_clean(result.summary),
        published=_isoformat(result.published),
        updated=_isoformat(result.updated),
        categories=list(result.categories or []),
        primary_category=result.primary_category or "",
        pdf_url=result.pdf_url or "",
        abs_url=result.entry_id,
    )


def _lookup(client: arxiv.Client, arxiv_id: str) -> Optional[arxiv.Result]:
    """Blocking id lookup; returns None when arXiv has no such paper."""
    search = arxiv.Search(id_list=[arxiv_id], max_results=1)
    return next(client.results(search), None)


async def fetch_paper_metadata(arxiv_id: str, client: Optional[arxiv.Client] = None) -> PaperMetadata:
    """
    Fetch metadata for one arXiv paper.

    The arxiv client is synchronous, so the lookup runs in a worker thread.
    Raises MetadataNotFoundError for malformed or unknown ids; other
    arxiv.ArxivError failures propagate.
    """
    arxiv_id = arxiv_id.strip()
    if not arxiv_id or not _ARXIV_ID_RE.match(arxiv_id):
        raise MetadataNotFoundError(f"Invalid arXiv id '{arxiv_id}'")

    client = client or arxiv.Client(num_retries=2)
    logger.info(f"Fetching arXiv metadata for {arxiv_id}")

    try:
        result = await asyncio.to_thread(_lookup, client, arxiv_id)
    except arxiv.HTTPError as e:
        # arXiv answers ids it cannot parse with 400
        if e.status == 400:
            raise MetadataNotFoundError(f"Paper '{arxiv_id}' not found") from e
        raise

    if result is None:
        raise MetadataNotFoundError(f"Paper '{arxiv_id}' not found")
    return paper_from_result(result)
