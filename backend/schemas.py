"""
Data model shared by the pipeline, the presentation layer and the history store.
"""

import re
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


RESULT_SCHEMA_VERSION = 2

# "y =", "f(x) =", "g (x)=" ... in front of a plottable expression
_FUNCTION_PREFIX = re.compile(r"^\s*(?:y|[A-Za-z]\s*\(\s*x\s*\))\s*=\s*")


# ============================================================================
# PROBLEM INPUT
# ============================================================================

class ImageInput(BaseModel):
    kind: Literal["image"] = "image"
    image_data: bytes
    mime_type: str = "image/png"
    source: Literal["upload", "draw"] = "upload"


class TextInput(BaseModel):
    kind: Literal["text"] = "text"
    statement: str = Field(..., min_length=1)


ProblemInput = Annotated[Union[ImageInput, TextInput], Field(discriminator="kind")]


# ============================================================================
# PIPELINE ARTIFACTS
# ============================================================================

class ExtractionResult(BaseModel):
    raw_text: str


class CorrectedProblem(BaseModel):
    corrected_text: str


class GraphSpec(BaseModel):
    """Plotting hint for a solution. The expression is only kept when plottable."""
    is_plottable: bool = False
    function_expression: Optional[str] = None

    @model_validator(mode="after")
    def normalize_expression(self):
        expr = self.function_expression
        if expr is not None:
            expr = _FUNCTION_PREFIX.sub("", expr).strip() or None
        if not self.is_plottable or expr is None:
            self.is_plottable = False
            expr = None
        self.function_expression = expr
        return self


class Solution(BaseModel):
    result_lines: list[str] = Field(default_factory=list)
    explanation_steps: list[str] = Field(default_factory=list)
    graph: Optional[GraphSpec] = None


class SolveResult(BaseModel):
    """Result of one completed pipeline run."""
    schema_version: Literal[2] = RESULT_SCHEMA_VERSION
    raw_text: Optional[str] = None  # only for image input (or the trimmed statement)
    corrected_text: str
    result_lines: list[str] = Field(default_factory=list)
    explanation_steps: list[str] = Field(default_factory=list)
    graph: Optional[GraphSpec] = None

    @property
    def solution(self) -> Solution:
        return Solution(
            result_lines=self.result_lines,
            explanation_steps=self.explanation_steps,
            graph=self.graph,
        )


# ============================================================================
# HISTORY
# ============================================================================

class HistoryRecord(BaseModel):
    id: str
    owner_id: str
    raw_text: Optional[str] = None
    corrected_text: str
    result_lines: list[str] = Field(default_factory=list)
    explanation_steps: list[str] = Field(default_factory=list)
    graph: Optional[GraphSpec] = None
    image_url: Optional[str] = None
    created_at: float
    schema_version: Literal[2] = RESULT_SCHEMA_VERSION
