"""
Tests for the consolidated solve pipeline and its error boundary.
"""

import pytest

from conftest import FakeFlows, make_png
from errors import InvalidInputError, NothingToSolveError, SolveError
from pipeline import SolvePipeline
from schemas import GraphSpec, ImageInput, TextInput


class BrokenHistory:
    def __init__(self):
        self.calls = 0

    async def upload_image(self, owner_id, data_uri):
        self.calls += 1
        raise ConnectionError("storage down")

    async def add_record(self, owner_id, result, image_url=None):
        self.calls += 1
        raise ConnectionError("storage down")


async def test_linear_equation_is_solved_and_not_plotted(flows):
    pipeline = SolvePipeline(flows)
    result = await pipeline.solve(TextInput(statement="3x + 2 = 11"))

    assert result.schema_version == 2
    assert result.raw_text == "3x + 2 = 11"
    assert result.corrected_text == "3x + 2 = 11"
    assert "x = 3" in result.result_lines
    assert result.graph.is_plottable is False
    assert result.graph.function_expression is None
    assert flows.calls == [("solve", "3x + 2 = 11")]


async def test_function_is_plottable_without_prefix(flows):
    result = await SolvePipeline(flows).solve(TextInput(statement="f(x) = x^2 - 5"))
    assert result.graph.is_plottable is True
    assert result.graph.function_expression == "x^2 - 5"


async def test_text_without_solution_is_not_an_error(flows):
    outcome = await SolvePipeline(flows).run(TextInput(statement="what is love"))
    assert outcome.ok
    assert outcome.result.result_lines == []
    assert outcome.result.corrected_text == "what is love"


async def test_no_input_fails_before_remote_call(flows):
    outcome = await SolvePipeline(flows).run(None)
    assert not outcome.ok
    assert outcome.error_title == InvalidInputError.title
    assert outcome.notification.variant == "destructive"
    assert flows.calls == []


async def test_blank_image_is_rejected_before_remote_call(flows):
    pipeline = SolvePipeline(flows)
    with pytest.raises(NothingToSolveError, match="canvas is empty"):
        await pipeline.solve(ImageInput(image_data=make_png(blank=True), source="draw"))
    assert flows.calls == []


async def test_image_that_ocrs_to_nothing_writes_no_history(history, user):
    flows = FakeFlows(ocr_text="")
    pipeline = SolvePipeline(flows, history=history)

    outcome = await pipeline.run(ImageInput(image_data=make_png()), user=user)
    await pipeline.drain()

    assert not outcome.ok
    assert outcome.error_title == "Nothing to solve"
    assert outcome.result is None
    assert await history.list_for_owner(user.uid) == []


async def test_image_input_keeps_raw_text(history, user):
    flows = FakeFlows(ocr_text="3x + 2 = 11")
    pipeline = SolvePipeline(flows, history=history)

    outcome = await pipeline.run(ImageInput(image_data=make_png()), user=user)
    await pipeline.drain()

    assert outcome.ok
    assert outcome.result.raw_text == "3x + 2 = 11"
    assert outcome.notification.title == "Success!"
    assert flows.calls[0][1].startswith("data:image/png;base64,")

    records = await history.list_for_owner(user.uid)
    assert len(records) == 1
    assert records[0].image_url.startswith("http://testserver/v1/images/user-1/")
    assert records[0].result_lines == ["x = 3"]


async def test_text_solve_by_signed_in_user_has_no_image(history, user, flows):
    pipeline = SolvePipeline(flows, history=history)
    await pipeline.run(TextInput(statement="3x + 2 = 11"), user=user)
    await pipeline.drain()

    records = await history.list_for_owner(user.uid)
    assert len(records) == 1
    assert records[0].image_url is None


async def test_anonymous_solve_writes_nothing(history, flows):
    pipeline = SolvePipeline(flows, history=history)
    outcome = await pipeline.run(TextInput(statement="3x + 2 = 11"), user=None)
    await pipeline.drain()

    assert outcome.ok
    assert outcome.notification.title == "Equation Solved"
    assert "Log in" in outcome.notification.description
    assert await history.list_for_owner("user-1") == []


async def test_remote_failure_is_terminal_and_not_retried():
    flows = FakeFlows(fail="solve")
    pipeline = SolvePipeline(flows)

    outcome = await pipeline.run(TextInput(statement="3x + 2 = 11"))

    assert not outcome.ok
    assert outcome.result is None
    assert outcome.error_title == SolveError.title
    assert len(flows.calls) == 1


async def test_persistence_failure_does_not_block_result(user, flows):
    broken = BrokenHistory()
    pipeline = SolvePipeline(flows, history=broken)

    outcome = await pipeline.run(ImageInput(image_data=make_png()), user=user)
    await pipeline.drain()

    assert outcome.ok
    assert outcome.result.result_lines == ["x = 3"]
    assert broken.calls == 1


async def test_resubmission_is_an_independent_run(flows):
    pipeline = SolvePipeline(flows)
    problem = TextInput(statement="f(x) = x^2 - 5")

    first = await pipeline.solve(problem)
    first.result_lines.append("mutated")
    second = await pipeline.solve(problem)

    assert "mutated" not in second.result_lines
    assert len(flows.calls) == 2


def test_graph_spec_invariants():
    assert GraphSpec(is_plottable=False, function_expression="x^2").function_expression is None
    assert GraphSpec(is_plottable=True, function_expression="y = 3*x + 2").function_expression == "3*x + 2"
    assert GraphSpec(is_plottable=True, function_expression="g (x)= sin(x)").function_expression == "sin(x)"
    # plottable without an expression is downgraded
    assert GraphSpec(is_plottable=True).is_plottable is False
