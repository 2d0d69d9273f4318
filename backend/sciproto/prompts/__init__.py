from .analysis import (
    ANALYSIS_SYSTEM_PROMPT,
    RECORD_ANALYSIS_TOOL_NAME,
    build_analysis_prompt,
    build_paper_context,
)
from .prototype import EXTRACTION_INSTRUCTION, RENDER_PROTOTYPE_TOOL, SYSTEM_INSTRUCTION

__all__ = [
    "ANALYSIS_SYSTEM_PROMPT",
    "EXTRACTION_INSTRUCTION",
    "RECORD_ANALYSIS_TOOL_NAME",
    "RENDER_PROTOTYPE_TOOL",
    "SYSTEM_INSTRUCTION",
    "build_analysis_prompt",
    "build_paper_context",
]
