"""
LangGraph Workflow for the legacy three-step pipeline

extract -> correct -> [pause for user confirmation] -> solve

- Steps run strictly in order; a failing step routes straight to END
- The graph is interrupted before `solve` so the corrected text can be edited
  and confirmed (or the run cancelled) on a later request
- State is checkpointed per thread_id (PostgreSQL when configured)
"""

import asyncio
import logging
from typing import Literal, Optional

from langgraph.graph import StateGraph, END
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver
from psycopg_pool import AsyncConnectionPool

from errors import ExtractionError, InvalidInputError, NothingToSolveError, SolveError, UnknownThreadError
from inputs import EMPTY_CANVAS_MESSAGE, EMPTY_CROP_MESSAGE, ensure_not_blank, to_data_uri
from pipeline import to_solve_result
from schemas import ImageInput, SolveResult, TextInput
from state import PipelineState

logger = logging.getLogger(__name__)

_ERRORS = {
    "nothing_to_solve": NothingToSolveError,
    "extraction": ExtractionError,
    "solve": SolveError,
}


def route_after_step(state: PipelineState) -> Literal["continue", "stop"]:
    """Abort the remaining steps as soon as one step failed."""
    if state.get("error_kind"):
        logger.info(f"[Route] Stopping after {state['error_kind']} error")
        return "stop"
    return "continue"


def raise_for_state(state: PipelineState) -> None:
    kind = state.get("error_kind")
    if kind:
        raise _ERRORS[kind](state.get("error_message"))


class LegacyWorkflow:
    """Extract, correct, confirm, solve; one checkpointed thread per run."""

    def __init__(self, flows, checkpointer):
        self.flows = flows
        self.graph = self._build(checkpointer)

    # ========================================================================
    # NODE FUNCTIONS
    # ========================================================================

    async def extract_node(self, state: PipelineState) -> PipelineState:
        if state["input_type"] == "text":
            return {**state, "ocr_text": state["input_content"]}

        logger.info(f"[Extract] Thread {state['thread_id']}: reading image")
        try:
            extraction = await self.flows.extract_text(state["input_content"])
        except Exception as e:
            logger.error(f"[Extract] Error: {e}", exc_info=True)
            return {
                **state,
                "status": "failed",
                "error_kind": "extraction",
                "error_message": ExtractionError.default_message
            }

        if not extraction.raw_text.strip():
            message = EMPTY_CANVAS_MESSAGE if state["input_source"] == "draw" else EMPTY_CROP_MESSAGE
            return {**state, "status": "failed", "error_kind": "nothing_to_solve", "error_message": message}

        return {**state, "ocr_text": extraction.raw_text.strip()}

    async def correct_node(self, state: PipelineState) -> PipelineState:
        try:
            corrected = await self.flows.correct_mistakes(state["ocr_text"])
        except Exception as e:
            logger.error(f"[Correct] Error: {e}", exc_info=True)
            return {**state, "status": "failed", "error_kind": "solve", "error_message": SolveError.default_message}

        text = corrected.corrected_text.strip() or state["ocr_text"]
        logger.info(f"[Correct] Awaiting confirmation of: {text[:50]}")
        return {**state, "corrected_text": text, "status": "awaiting_confirmation"}

    async def solve_node(self, state: PipelineState) -> PipelineState:
        try:
            output = await self.flows.solve_text(state["corrected_text"])
            result = to_solve_result(output, TextInput(statement=state["ocr_text"]))
        except Exception as e:
            logger.error(f"[Solve] Error: {e}", exc_info=True)
            return {**state, "status": "failed", "error_kind": "solve", "error_message": SolveError.default_message}

        # The user-confirmed text is what was solved
        result = result.model_copy(update={"corrected_text": state["corrected_text"]})
        logger.info(f"[Solve] Thread {state['thread_id']}: {len(result.result_lines)} result lines")
        return {**state, "result": result.model_dump(), "status": "solved"}

    # ========================================================================
    # GRAPH CONSTRUCTION
    # ========================================================================

    def _build(self, checkpointer):
        workflow = StateGraph(PipelineState)

        workflow.add_node("extract", self.extract_node)
        workflow.add_node("correct", self.correct_node)
        workflow.add_node("solve", self.solve_node)

        workflow.set_entry_point("extract")
        workflow.add_conditional_edges("extract", route_after_step, {"continue": "correct", "stop": END})
        workflow.add_conditional_edges("correct", route_after_step, {"continue": "solve", "stop": END})
        workflow.add_edge("solve", END)

        return workflow.compile(checkpointer=checkpointer, interrupt_before=["solve"])

    # ========================================================================
    # RUN CONTROL
    # ========================================================================

    async def start(self, thread_id: str, problem_input, user_id: Optional[str] = None) -> PipelineState:
        """Run extract + correct, then pause before solve."""
        if problem_input is None:
            raise InvalidInputError()
        await asyncio.to_thread(ensure_not_blank, problem_input)

        if isinstance(problem_input, ImageInput):
            input_type, source = "image", problem_input.source
            content = to_data_uri(problem_input.mime_type, problem_input.image_data)
        else:
            input_type, source, content = "text", "text", problem_input.statement

        initial_state: PipelineState = {
            "input_type": input_type,
            "input_content": content,
            "input_source": source,
            "user_id": user_id,
            "thread_id": thread_id,
            "ocr_text": None,
            "corrected_text": None,
            "result": None,
            "status": "running",
            "error_kind": None,
            "error_message": None
        }

        config = {"configurable": {"thread_id": thread_id}}
        state = await self.graph.ainvoke(initial_state, config)
        raise_for_state(state)
        return state

    async def _paused_state(self, config) -> PipelineState:
        snapshot = await self.graph.aget_state(config)
        if not snapshot or not snapshot.values:
            raise UnknownThreadError()
        if "solve" not in (snapshot.next or ()):
            raise InvalidInputError("Nothing is awaiting confirmation in this session.", title="Nothing to confirm")
        return snapshot.values

    async def confirm(self, thread_id: str, edited_text: Optional[str] = None) -> PipelineState:
        """Resume the paused run, optionally with the user's edited text."""
        config = {"configurable": {"thread_id": thread_id}}
        await self._paused_state(config)

        if edited_text is not None:
            edited_text = edited_text.strip()
            if not edited_text:
                raise InvalidInputError()
            await self.graph.aupdate_state(config, {"corrected_text": edited_text})

        # Invoke with None input to resume execution from current state
        state = await self.graph.ainvoke(None, config)
        raise_for_state(state)
        return state

    async def cancel(self, thread_id: str) -> PipelineState:
        """Abort without error; the solve step is skipped."""
        config = {"configurable": {"thread_id": thread_id}}
        await self._paused_state(config)
        await self.graph.aupdate_state(config, {"status": "cancelled"}, as_node="solve")
        snapshot = await self.graph.aget_state(config)
        logger.info(f"[Cancel] Thread {thread_id} cancelled")
        return snapshot.values

    @staticmethod
    def result_of(state: PipelineState) -> Optional[SolveResult]:
        if state.get("result"):
            return SolveResult.model_validate(state["result"])
        return None


# ============================================================================
# CHECKPOINTER
# ============================================================================

async def get_checkpointer(database_url: Optional[str]):
    """Returns (checkpointer, pool). PostgreSQL when a URL is configured."""
    if not database_url:
        logger.info("[Checkpointer] DATABASE_URL not set, using in-memory checkpoints")
        return MemorySaver(), None

    pool = AsyncConnectionPool(
        conninfo=database_url,
        max_size=20,
        kwargs={"autocommit": True, "prepare_threshold": 0},
        open=False
    )
    await pool.open()

    checkpointer = AsyncPostgresSaver(pool)
    await checkpointer.setup()
    return checkpointer, pool
