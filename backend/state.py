"""
Graph State Definition for the legacy extract -> correct -> solve workflow.

This module defines the PipelineState TypedDict that flows through the LangGraph workflow.
All nodes must accept and return updates to this structure.
"""

from typing import TypedDict, Optional, Literal


class PipelineState(TypedDict):
    """
    The state object that flows through the legacy workflow.

    It is persisted by the LangGraph checkpointer so the run can pause for the
    user's confirmation of the corrected text and resume on a later request.
    """

    # --- Input ---
    input_type: Literal["text", "image"]
    input_content: str  # Trimmed statement or image data URI
    input_source: Literal["text", "upload", "draw"]
    user_id: Optional[str]
    thread_id: str

    # --- Intermediate text ---
    ocr_text: Optional[str]
    corrected_text: Optional[str]

    # --- Output ---
    result: Optional[dict]  # SolveResult.model_dump()
    status: Literal["running", "awaiting_confirmation", "solved", "cancelled", "failed"]
    error_kind: Optional[Literal["nothing_to_solve", "extraction", "solve"]]
    error_message: Optional[str]
