"""
Result Presentation

Builds the view model the UI renders from a (possibly missing, loading or
failed) SolveResult: placeholders, lazily expanded explanation and graph,
graph sampling with SymPy/NumPy, the typing reveal stream and exports.
"""

import asyncio
import io
import logging
import math
import re
from typing import AsyncIterator, Optional
from xml.sax.saxutils import escape

import numpy as np
import sympy as sp
from pydantic import BaseModel
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import ListFlowable, ListItem, Paragraph, SimpleDocTemplate, Spacer
from sympy.parsing.sympy_parser import (
    convert_xor,
    implicit_multiplication_application,
    parse_expr,
    standard_transformations,
)

from errors import PlotError
from schemas import GraphSpec, SolveResult

logger = logging.getLogger(__name__)

NO_SOLUTION = "No solution found."

X = sp.Symbol("x")
TRANSFORMS = standard_transformations + (implicit_multiplication_application, convert_xor)
LOCALS = {
    "x": X,
    "e": sp.E,
    "pi": sp.pi,
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "asin": sp.asin,
    "acos": sp.acos,
    "atan": sp.atan,
    "sinh": sp.sinh,
    "cosh": sp.cosh,
    "tanh": sp.tanh,
    "sqrt": sp.sqrt,
    "exp": sp.exp,
    "log": sp.log,
    "ln": sp.log,
    "abs": sp.Abs,
}

_TOKEN = re.compile(r"\s*(?:(?P<number>\d+(?:\.\d*)?|\.\d+)|(?P<name>[A-Za-z]+)|[-+*/^().])")
MAX_EXPRESSION_LENGTH = 200
MAX_NUMBER_DIGITS = 12
MAX_DECIMAL_EXPONENT = 300


class GraphSamples(BaseModel):
    expression: str
    x: list[float]
    y: list[Optional[float]]  # None where the function is undefined


class ResultView(BaseModel):
    is_loading: bool = False
    error: Optional[str] = None
    raw_text: Optional[str] = None
    corrected_text: Optional[str] = None
    has_solution: bool = False
    solution_lines: list[str] = []
    explanation_steps: Optional[list[str]] = None
    graph: Optional[GraphSamples] = None
    graph_error: Optional[str] = None


# ============================================================================
# GRAPH SAMPLING
# ============================================================================

def _check_tokens(expression: str) -> None:
    """Only numbers, x, arithmetic and the known function names may reach the parser."""
    if not expression or len(expression) > MAX_EXPRESSION_LENGTH:
        raise PlotError()
    pos = 0
    while pos < len(expression):
        match = _TOKEN.match(expression, pos)
        if match is None:
            raise PlotError()
        name = match.group("name")
        if name is not None and name not in LOCALS:
            raise PlotError()
        number = match.group("number")
        if number is not None and len(number) > MAX_NUMBER_DIGITS:
            raise PlotError()
        pos = match.end()


def _magnitude(value: sp.Expr) -> float:
    return abs(complex(value.evalf()))


def _check_magnitude(expr: sp.Expr) -> None:
    """Reject constant powers too large to evaluate (e.g. 9^9^9^9)."""
    for node in sp.postorder_traversal(expr):
        if not isinstance(node, sp.Pow) or node.free_symbols:
            continue
        base, exponent = (_magnitude(arg) for arg in node.args)
        if not (math.isfinite(base) and math.isfinite(exponent)):
            raise PlotError()
        if base > 1 and exponent * math.log10(base) > MAX_DECIMAL_EXPONENT:
            raise PlotError()
        if 0 < base < 1 and exponent * -math.log10(base) > MAX_DECIMAL_EXPONENT:
            raise PlotError()


def parse_function(expression: str) -> sp.Expr:
    """Parse a single-variable expression in x ('^' is a power)."""
    _check_tokens(expression)
    try:
        expr = parse_expr(expression, local_dict=dict(LOCALS), transformations=TRANSFORMS, evaluate=False)
        if not isinstance(expr, sp.Expr) or not expr.free_symbols <= {X}:
            raise PlotError()
        _check_magnitude(expr)
    except PlotError:
        raise
    except Exception as e:
        raise PlotError() from e
    return expr


def sample_function(
    expression: str,
    x_min: float = -10.0,
    x_max: float = 10.0,
    step: float = 0.05
) -> GraphSamples:
    expr = parse_function(expression)
    xs = np.round(np.arange(x_min, x_max + step / 2, step), 10)

    try:
        f = sp.lambdify(X, expr, "numpy")
        with np.errstate(all="ignore"):
            ys = np.asarray(f(xs))
        if np.iscomplexobj(ys):
            ys = np.where(np.abs(ys.imag) < 1e-12, ys.real, np.nan)
        ys = np.broadcast_to(ys.astype(float), xs.shape)
    except Exception as e:
        raise PlotError() from e

    finite = np.isfinite(ys)
    if not finite.any():
        raise PlotError("The function has no real values in the plotted range.")

    return GraphSamples(
        expression=expression,
        x=xs.tolist(),
        y=[float(v) if ok else None for v, ok in zip(ys, finite)]
    )


def render_graph(graph: Optional[GraphSpec], **domain) -> tuple[Optional[GraphSamples], Optional[str]]:
    """Never raises: a bad expression only affects the graph widget."""
    if graph is None or not graph.is_plottable:
        return None, None
    try:
        return sample_function(graph.function_expression, **domain), None
    except PlotError as e:
        logger.warning(f"[Plot] {graph.function_expression!r}: {e.message}")
        return None, e.message


# ============================================================================
# RESULT VIEW
# ============================================================================

def build_result_view(
    result: Optional[SolveResult] = None,
    is_loading: bool = False,
    error: Optional[str] = None,
    include_explanation: bool = False,
    include_graph: bool = False,
    **domain
) -> ResultView:
    if is_loading or error or result is None:
        return ResultView(is_loading=is_loading, error=error)

    view = ResultView(
        raw_text=result.raw_text,
        corrected_text=result.corrected_text,
        has_solution=bool(result.result_lines),
        solution_lines=result.result_lines or [NO_SOLUTION],
    )
    if include_explanation:
        view.explanation_steps = result.explanation_steps
    if include_graph:
        view.graph, view.graph_error = render_graph(result.graph, **domain)
    return view


async def render_graph_async(
    graph: Optional[GraphSpec],
    timeout: float = 5.0,
    **domain
) -> tuple[Optional[GraphSamples], Optional[str]]:
    """render_graph in a worker thread; a sampling run slower than `timeout` is a plot error."""
    if graph is None or not graph.is_plottable:
        return None, None
    try:
        return await asyncio.wait_for(asyncio.to_thread(render_graph, graph, **domain), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[Plot] {graph.function_expression!r}: timed out after {timeout}s")
        return None, PlotError.default_message


async def build_result_view_async(
    result: Optional[SolveResult] = None,
    is_loading: bool = False,
    error: Optional[str] = None,
    include_explanation: bool = False,
    include_graph: bool = False,
    timeout: float = 5.0,
    **domain
) -> ResultView:
    view = build_result_view(
        result, is_loading=is_loading, error=error, include_explanation=include_explanation
    )
    if include_graph and result is not None and not (is_loading or error):
        view.graph, view.graph_error = await render_graph_async(result.graph, timeout=timeout, **domain)
    return view


async def typing_stream(text: str, speed_ms: int = 15) -> AsyncIterator[str]:
    """Reveal text one character at a time (cosmetic only)."""
    for char in text:
        yield char
        await asyncio.sleep(speed_ms / 1000)


# ============================================================================
# EXPORTS
# ============================================================================

def export_text(result: SolveResult) -> str:
    lines = ["Equation Ace Solution", ""]
    if result.raw_text:
        lines += ["Extracted Text:", result.raw_text, ""]
    lines += ["Corrected Problem:", result.corrected_text, ""]
    lines += ["Solution:"] + (result.result_lines or [NO_SOLUTION]) + [""]
    if result.explanation_steps:
        lines.append("Explanation:")
        lines += [f"{i}. {step}" for i, step in enumerate(result.explanation_steps, 1)]
        lines.append("")
    if result.graph and result.graph.is_plottable:
        lines += [f"Graph: y = {result.graph.function_expression}", ""]
    return "\n".join(lines)


def export_pdf(result: SolveResult) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=letter, title="Equation Ace Solution",
        leftMargin=0.8 * inch, rightMargin=0.8 * inch, topMargin=0.8 * inch, bottomMargin=0.8 * inch
    )
    styles = getSampleStyleSheet()
    body, heading = styles["BodyText"], styles["Heading2"]

    story = [Paragraph("Equation Ace Solution", styles["Title"])]
    if result.raw_text:
        story += [Paragraph("Extracted Text", heading), Paragraph(escape(result.raw_text), body)]
    story += [Paragraph("Corrected Problem", heading), Paragraph(escape(result.corrected_text), body)]
    story.append(Paragraph("Solution", heading))
    for line in result.result_lines or [NO_SOLUTION]:
        story.append(Paragraph(escape(line), body))
    if result.explanation_steps:
        story.append(Paragraph("Explanation", heading))
        story.append(ListFlowable(
            [ListItem(Paragraph(escape(step), body)) for step in result.explanation_steps],
            bulletType="1"
        ))
    if result.graph and result.graph.is_plottable:
        story += [Spacer(1, 12), Paragraph(escape(f"Graph: y = {result.graph.function_expression}"), body)]

    doc.build(story)
    return buffer.getvalue()
