"""
Shared fixtures: a fake model service, images and a fake Redis.
"""

import base64
import io
from typing import Optional

import fakeredis
import pytest
from PIL import Image, ImageDraw

from auth import AuthService, User
from flows import GraphData, SolveOutput
from history import RedisHistoryStore
from schemas import CorrectedProblem, ExtractionResult


SOLUTIONS = {
    "3x + 2 = 11": SolveOutput(
        corrected_text="3x + 2 = 11",
        solved_result=["x = 3"],
        explanation=["Subtract 2 from both sides: 3x = 9", "Divide both sides by 3: x = 3"],
        graph_data=GraphData(is_plottable=False),
    ),
    "f(x) = x^2 - 5": SolveOutput(
        corrected_text="f(x) = x^2 - 5",
        solved_result=["Vertex: (0, -5)", "Roots: x = ±√5"],
        explanation=["The graph is a parabola shifted down by 5."],
        # the model sometimes echoes the function name
        graph_data=GraphData(is_plottable=True, function_str="f(x) = x^2 - 5"),
    ),
    "y = x^^2": SolveOutput(
        corrected_text="y = x^^2",
        solved_result=["A parabola"],
        explanation=["Square x."],
        graph_data=GraphData(is_plottable=True, function_str="x^^2"),
    ),
}


class FakeFlows:
    """Stands in for SolveFlows; records every remote call."""

    def __init__(self, ocr_text: str = "3x + 2 = 11", fail: Optional[str] = None):
        self.ocr_text = ocr_text
        self.fail = fail
        self.calls = []

    def _answer(self, text: str) -> SolveOutput:
        if text in SOLUTIONS:
            return SOLUTIONS[text].model_copy()
        return SolveOutput(corrected_text=text, solved_result=[], explanation=[])

    async def extract_text(self, photo_data_uri: str) -> ExtractionResult:
        self.calls.append(("extract", photo_data_uri))
        if self.fail == "extract":
            raise RuntimeError("vision model unavailable")
        return ExtractionResult(raw_text=self.ocr_text)

    async def correct_mistakes(self, ocr_text: str) -> CorrectedProblem:
        self.calls.append(("correct", ocr_text))
        if self.fail == "correct":
            raise RuntimeError("text model unavailable")
        return CorrectedProblem(corrected_text=ocr_text.replace("O", "0"))

    async def solve_text(self, text: str) -> SolveOutput:
        self.calls.append(("solve_text", text))
        if self.fail == "solve":
            raise RuntimeError("text model unavailable")
        return self._answer(text)

    async def solve(self, problem_statement=None, photo_data_uri=None) -> SolveOutput:
        self.calls.append(("solve", problem_statement or photo_data_uri))
        if self.fail == "solve":
            raise TimeoutError("deadline exceeded")
        if problem_statement:
            return self._answer(problem_statement)
        output = self._answer(self.ocr_text) if self.ocr_text else SolveOutput(
            corrected_text="", solved_result=[], explanation=[]
        )
        return output.model_copy(update={"ocr_text": self.ocr_text})


def fake_verifier(token: str, client_id: str) -> dict:
    if not token.startswith("good-"):
        raise ValueError("Token has wrong audience")
    uid = token[len("good-"):]
    return {"sub": uid, "email": f"{uid}@example.com", "name": uid.title()}


def make_png(blank: bool = False, size=(200, 100), mode="RGB") -> bytes:
    img = Image.new(mode, size, "white" if mode == "RGB" else (255, 255, 255, 0))
    if not blank:
        draw = ImageDraw.Draw(img)
        draw.line([(20, 50), (180, 50)], fill="black", width=5)
        draw.line([(100, 10), (100, 90)], fill="black", width=5)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def make_data_uri(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


@pytest.fixture
def flows():
    return FakeFlows()


@pytest.fixture
def user():
    return User(uid="user-1", email="user-1@example.com")


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def history(redis_client):
    return RedisHistoryStore(redis_client, "http://testserver/")


@pytest.fixture
def auth_service(redis_client):
    return AuthService(
        "test-client-id", ["localhost", "equation-ace.example.com"], redis_client, verifier=fake_verifier
    )
