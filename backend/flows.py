"""
Prompt wrappers around the hosted Gemini model.

Each flow defines a structured output schema and a prompt template:
- extract_text:     image -> raw OCR text
- correct_mistakes: raw OCR text -> corrected text
- solve_text:       corrected text -> solution (legacy three-step shape)
- solve:            statement or image -> corrected text + solution in one call
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate

from errors import InvalidInputError
from schemas import CorrectedProblem, ExtractionResult

logger = logging.getLogger(__name__)


# ============================================================================
# PYDANTIC SCHEMAS FOR STRUCTURED OUTPUT
# ============================================================================

class OcrOutput(BaseModel):
    """Structured output for text extraction."""
    ocr_text: str = Field(
        description="The extracted text from the image, representing the equation or problem. Empty string if there is no text."
    )


class CorrectionOutput(BaseModel):
    """Structured output for OCR mistake correction."""
    corrected_text: str = Field(description="The corrected equation text only.")


class GraphData(BaseModel):
    is_plottable: bool = Field(description="Whether the result is a plottable 2D function of x.")
    function_str: Optional[str] = Field(
        default=None,
        description="If plottable, the function expression to be plotted (e.g. 'x^2 + 3*x - 4'). Do not include 'y =' or 'f(x) ='."
    )


class SolveOutput(BaseModel):
    """Structured output for solving a (corrected) problem."""
    ocr_text: Optional[str] = Field(
        default=None,
        description="Only for image input: the raw text read from the image before correction. Empty string if the image has no text."
    )
    corrected_text: str = Field(description="The corrected version of the problem text.")
    solved_result: list[str] = Field(description="The final solved result, one line per item.")
    explanation: list[str] = Field(description="A step-by-step explanation of how the solution was reached.")
    graph_data: Optional[GraphData] = Field(
        default=None,
        description="Data for visualizing the result if it is a plottable function."
    )


# ============================================================================
# PROMPTS
# ============================================================================

EXTRACT_PROMPT = """You are an OCR expert. Extract the equation or math problem from the image.
Return the text exactly as written. If the image contains no text, return an empty string."""

CORRECT_PROMPT = """You are an expert in correcting common OCR mistakes in handwritten math equations.

You will receive the OCR output of a handwritten equation. Correct common mistakes, such as
misinterpreting 'O' as '0' or '^' as '**'. Return only the corrected equation."""

CORRECTION_RULES = """Silently correct any common recognition or typing mistakes first:
- Mistakes in both the natural language parts of the problem and the mathematical expressions.
- 'O' read as '0', 'l' as '1', 'S' as '5' or '∫'.
- Malformed calculus notation such as 'd/dx', 'dy/dx' or '∫'.
- Probability and statistics notation such as 'P(A)', 'nCr', 'Σ' or '!'.
- Exponents, e.g. 'x^2' instead of 'x2'.
- Standard operators (+, -, *, /).
Put the clean version in corrected_text."""

SOLVE_RULES = """Solve the corrected problem. Supported problem classes:
- Word problems described in natural language.
- Algebra: solving for variables, simplifying expressions, systems of equations.
- Calculus: derivatives, integrals, limits, series.
- Probability.
- Statistics: mean, median, mode, permutations, combinations, factorials, summation.

Give the final result in solved_result (one line per item, e.g. "x = 3") and a detailed
step-by-step explanation in explanation.

If the problem is a plottable 2D function of x (e.g. y = 3x + 2, f(x) = x^2 - 5), set
graph_data.is_plottable to true and put only the right-hand side in graph_data.function_str
(e.g. '3*x + 2' or 'x^2 - 5'). An equation to be solved for a value (e.g. 3x + 2 = 11) is
not plottable: set graph_data.is_plottable to false."""

SOLVE_TEXT_SYSTEM = f"""You are an expert AI mathematician and OCR correction specialist. You will be given
text that might contain a word problem, a direct equation, or a mix of both. The text may
contain recognition or typing errors.

{CORRECTION_RULES}

{SOLVE_RULES}"""

SOLVE_IMAGE_SYSTEM = f"""You are an expert AI mathematician and OCR specialist. You will be given an image
of a math problem.

First read the text in the image and put it, unmodified, in ocr_text. If the image contains
no text, set ocr_text to an empty string and leave every other field empty.

{CORRECTION_RULES}

{SOLVE_RULES}"""


# ============================================================================
# FLOWS
# ============================================================================

class SolveFlows:
    """Holds the chat models; constructed once at application start."""

    def __init__(self, text_llm, vision_llm=None):
        self.text_llm = text_llm
        self.vision_llm = vision_llm or text_llm

    @classmethod
    def from_settings(cls, settings) -> "SolveFlows":
        text_llm = ChatGoogleGenerativeAI(
            model=settings.text_model,
            google_api_key=settings.google_api_key,
            temperature=settings.solve_temperature
        )
        vision_llm = ChatGoogleGenerativeAI(
            model=settings.vision_model,
            google_api_key=settings.google_api_key,
            temperature=settings.extract_temperature
        )
        return cls(text_llm, vision_llm)

    async def extract_text(self, photo_data_uri: str) -> ExtractionResult:
        logger.info("[Extract] Reading text from image...")
        message = HumanMessage(
            content=[
                {"type": "text", "text": EXTRACT_PROMPT},
                {"type": "image_url", "image_url": {"url": photo_data_uri}}
            ]
        )
        result = await self.vision_llm.with_structured_output(OcrOutput).ainvoke([message])
        logger.info(f"[Extract] Got {len(result.ocr_text)} characters")
        return ExtractionResult(raw_text=result.ocr_text)

    async def correct_mistakes(self, ocr_text: str) -> CorrectedProblem:
        logger.info(f"[Correct] Correcting: {ocr_text[:50]}...")
        prompt = ChatPromptTemplate.from_messages([
            ("system", CORRECT_PROMPT),
            ("human", "Original OCR Text: {ocr_text}\n\nCorrected Equation Text:")
        ])
        chain = prompt | self.text_llm.with_structured_output(CorrectionOutput)
        result = await chain.ainvoke({"ocr_text": ocr_text})
        return CorrectedProblem(corrected_text=result.corrected_text)

    async def solve_text(self, text: str) -> SolveOutput:
        """Correct and solve a text problem."""
        logger.info(f"[Solve] Solving: {text[:50]}...")
        prompt = ChatPromptTemplate.from_messages([
            ("system", SOLVE_TEXT_SYSTEM),
            ("human", "Problem text: {problem}")
        ])
        chain = prompt | self.text_llm.with_structured_output(SolveOutput)
        return await chain.ainvoke({"problem": text})

    async def solve(
        self,
        problem_statement: Optional[str] = None,
        photo_data_uri: Optional[str] = None
    ) -> SolveOutput:
        """Single call: OCR (image only), silent correction, solving and graph hint."""
        if problem_statement:
            return await self.solve_text(problem_statement)
        if not photo_data_uri:
            raise InvalidInputError()

        logger.info("[Solve] Solving from image...")
        messages = [
            SystemMessage(content=SOLVE_IMAGE_SYSTEM),
            HumanMessage(
                content=[
                    {"type": "text", "text": "Solve the problem shown in this image."},
                    {"type": "image_url", "image_url": {"url": photo_data_uri}}
                ]
            )
        ]
        return await self.vision_llm.with_structured_output(SolveOutput).ainvoke(messages)
