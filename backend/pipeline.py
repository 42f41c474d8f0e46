"""
Solve Pipeline Client (consolidated shape).

One remote call turns a ProblemInput into a SolveResult. Errors are caught at
this boundary and converted into a single user-facing message; a successful
run by a signed-in user is saved to history in the background.
"""

import asyncio
import logging
from typing import Literal, Optional, Union

from pydantic import BaseModel

from errors import EquationAceError, InvalidInputError, NothingToSolveError, SolveError
from inputs import EMPTY_CANVAS_MESSAGE, EMPTY_CROP_MESSAGE, ensure_not_blank, to_data_uri
from schemas import GraphSpec, HistoryRecord, ImageInput, SolveResult, TextInput

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    title: str
    description: str
    variant: Literal["default", "destructive"] = "default"


class PipelineOutcome(BaseModel):
    ok: bool
    result: Optional[SolveResult] = None
    error_title: Optional[str] = None
    error_message: Optional[str] = None
    notification: Notification


def to_solve_result(output, problem_input: Union[ImageInput, TextInput]) -> SolveResult:
    """Map the model's structured output onto the versioned result type."""
    corrected = (output.corrected_text or "").strip()

    if isinstance(problem_input, ImageInput):
        raw_text = output.ocr_text if output.ocr_text is not None else corrected
        if not raw_text.strip():
            message = EMPTY_CANVAS_MESSAGE if problem_input.source == "draw" else EMPTY_CROP_MESSAGE
            raise NothingToSolveError(message)
        raw_text = raw_text.strip()
    else:
        raw_text = problem_input.statement

    # Corrected text always derives from the raw text
    if not corrected:
        corrected = raw_text

    graph = None
    if output.graph_data is not None:
        graph = GraphSpec(
            is_plottable=output.graph_data.is_plottable,
            function_expression=output.graph_data.function_str
        )

    return SolveResult(
        raw_text=raw_text,
        corrected_text=corrected,
        result_lines=[line for line in output.solved_result if line and line.strip()],
        explanation_steps=[step for step in output.explanation if step and step.strip()],
        graph=graph,
    )


def failure_outcome(error: EquationAceError) -> PipelineOutcome:
    return PipelineOutcome(
        ok=False,
        error_title=error.title,
        error_message=error.message,
        notification=Notification(title=error.title, description=error.message, variant="destructive")
    )


class SolvePipeline:
    """Drives the consolidated solve call and best-effort history persistence."""

    def __init__(self, flows, history=None):
        self.flows = flows
        self.history = history
        self._pending: set[asyncio.Task] = set()

    async def solve(self, problem_input) -> SolveResult:
        """Run the pipeline; raises EquationAceError subclasses."""
        if problem_input is None:
            raise InvalidInputError()

        if isinstance(problem_input, TextInput):
            output = await self._call(problem_statement=problem_input.statement)
        else:
            await asyncio.to_thread(ensure_not_blank, problem_input)
            data_uri = to_data_uri(problem_input.mime_type, problem_input.image_data)
            output = await self._call(photo_data_uri=data_uri)

        return to_solve_result(output, problem_input)

    async def _call(self, **kwargs):
        try:
            return await self.flows.solve(**kwargs)
        except EquationAceError:
            raise
        except Exception as e:
            logger.error(f"[Solve] Remote call failed: {e}", exc_info=True)
            raise SolveError() from e

    async def run(self, problem_input, user=None) -> PipelineOutcome:
        """Orchestration boundary: never raises."""
        try:
            result = await self.solve(problem_input)
        except EquationAceError as e:
            logger.warning(f"[Solve] {e.title}: {e.message}")
            return failure_outcome(e)
        except Exception as e:
            logger.error(f"[Solve] Unexpected error: {e}", exc_info=True)
            return failure_outcome(SolveError())

        if user is not None and self.history is not None:
            self.schedule_save(result, problem_input, user)
            notification = Notification(title="Success!", description="Equation solved and saved to your history.")
        else:
            notification = Notification(title="Equation Solved", description="Log in to save your results to history.")

        return PipelineOutcome(ok=True, result=result, notification=notification)

    # ------------------------------------------------------------------
    # History (fire-and-forget)
    # ------------------------------------------------------------------

    def schedule_save(self, result: SolveResult, problem_input, user) -> None:
        task = asyncio.create_task(self.save_to_history(result, problem_input, user))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def save_to_history(self, result: SolveResult, problem_input, user) -> Optional[HistoryRecord]:
        """Upload the image (if any) and write one record. Failures are logged only."""
        try:
            image_url = None
            if isinstance(problem_input, ImageInput):
                image_url = await self.history.upload_image(
                    user.uid, to_data_uri(problem_input.mime_type, problem_input.image_data)
                )
            record = await self.history.add_record(user.uid, result, image_url=image_url)
            logger.info(f"[History] Saved {record.id} for {user.uid}")
            return record
        except Exception as e:
            logger.error(f"[History] Could not save result for {user.uid}: {e}", exc_info=True)
            return None

    async def drain(self) -> None:
        """Wait for background saves (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
