"""
FastAPI Application for the Equation Ace Backend
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from auth import AuthService, User
from config import Settings, settings
from errors import ConfigurationError, EquationAceError, NotSignedInError
from flows import SolveFlows
from graph import LegacyWorkflow, get_checkpointer
from history import RedisHistoryStore
from inputs import Canvas, CropBox, InputSelector, Stroke, parse_data_uri
from pipeline import PipelineOutcome, SolvePipeline, failure_outcome
from presentation import (
    ResultView,
    build_result_view_async,
    export_pdf,
    export_text,
    typing_stream,
)
from schemas import HistoryRecord, ImageInput, SolveResult, TextInput

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 1.0

NOT_CONFIGURED_NOTICE = (
    "Sign-in and history are disabled: the server configuration is missing or invalid. "
    "Copy .env.example to .env and fill in the values, then restart the server."
)

# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class CropModel(BaseModel):
    x: float = 0
    y: float = 0
    width: float
    height: float
    unit: Literal["px", "%"] = "px"


class ImagePayload(BaseModel):
    data_uri: str = Field(..., min_length=1)
    crop: Optional[CropModel] = None


class StrokeModel(BaseModel):
    points: list[tuple[float, float]]
    mode: Literal["draw", "erase"] = "draw"
    width: Optional[int] = Field(None, ge=1, le=100)
    color: str = "black"


class DrawingPayload(BaseModel):
    """Either an already rasterised canvas or the raw strokes."""
    data_uri: Optional[str] = None
    width: int = Field(800, ge=1, le=4000)
    height: int = Field(400, ge=1, le=4000)
    strokes: list[StrokeModel] = []


class SolveRequest(BaseModel):
    problem_statement: Optional[str] = None
    image: Optional[ImagePayload] = None
    drawing: Optional[DrawingPayload] = None


class ExtractRequest(SolveRequest):
    thread_id: Optional[str] = None


class ExtractResponse(BaseModel):
    thread_id: str
    status: Literal["awaiting_confirmation"]
    ocr_text: str
    corrected_text: str


class ConfirmRequest(BaseModel):
    thread_id: str = Field(...)
    action: Literal["confirm", "cancel"] = "confirm"
    edited_text: Optional[str] = None


class ConfirmResponse(BaseModel):
    thread_id: str
    status: Literal["solved", "cancelled"]
    result: Optional[SolveResult] = None


class PresentRequest(BaseModel):
    result: Optional[SolveResult] = None
    is_loading: bool = False
    error: Optional[str] = None
    include_explanation: bool = False
    include_graph: bool = False


class ExplanationStreamRequest(BaseModel):
    steps: list[str]
    speed_ms: int = Field(15, ge=0, le=1000)


class SignInRequest(BaseModel):
    id_token: str = Field(..., min_length=1)


class UserModel(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class SignInResponse(BaseModel):
    session_token: str
    user: UserModel


class HealthResponse(BaseModel):
    status: str
    version: str = "0.1.0"
    environment: str
    persistence: Literal["configured", "not configured"]


class ConfigResponse(BaseModel):
    persistence_configured: bool
    missing: list[str]
    notice: Optional[str] = None


# ============================================================================
# SERVICES
# ============================================================================

@dataclass
class AppServices:
    """Explicitly constructed clients, owned by the application lifespan."""
    settings: Settings
    pipeline: SolvePipeline
    legacy: LegacyWorkflow
    history: Optional[RedisHistoryStore] = None
    auth: Optional[AuthService] = None
    pool: Any = None

    async def close(self) -> None:
        await self.pipeline.drain()
        if self.history is not None:
            await self.history.close()
        if self.pool is not None:
            await self.pool.close()


async def create_services(app_settings: Settings) -> AppServices:
    flows = SolveFlows.from_settings(app_settings)

    history = auth = None
    missing = app_settings.missing_persistence_settings()
    if missing:
        logger.warning(f"Auth/history not configured (missing: {', '.join(missing)}). Running in limited mode.")
    else:
        history = await RedisHistoryStore.connect(app_settings.redis_url, app_settings.public_base_url)
        auth = AuthService(
            app_settings.google_client_id,
            app_settings.auth_authorized_domains,
            history.client,
            session_ttl=app_settings.session_ttl_seconds
        )

    checkpointer, pool = await get_checkpointer(app_settings.database_url)
    return AppServices(
        settings=app_settings,
        pipeline=SolvePipeline(flows, history=history),
        legacy=LegacyWorkflow(flows, checkpointer),
        history=history,
        auth=auth,
        pool=pool,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


async def optional_user(request: Request, services: AppServices = Depends(get_services)) -> Optional[User]:
    if services.auth is None:
        return None
    return await services.auth.current_user(_bearer(request))


def require_auth(services: AppServices = Depends(get_services)) -> AuthService:
    if services.auth is None:
        raise ConfigurationError()
    return services.auth


async def require_user(request: Request, auth: AuthService = Depends(require_auth)) -> User:
    user = await auth.current_user(_bearer(request))
    if user is None:
        raise NotSignedInError()
    return user


def require_history(services: AppServices = Depends(get_services)) -> RedisHistoryStore:
    if services.history is None:
        raise ConfigurationError()
    return services.history


def select_input(request: SolveRequest):
    """Apply the request's forms in reverse precedence; the last one entered wins."""
    selector = InputSelector()
    if request.drawing is not None:
        drawing = request.drawing
        canvas = None
        if not drawing.data_uri:
            canvas = Canvas(width=drawing.width, height=drawing.height)
            for s in drawing.strokes:
                canvas.add_stroke(Stroke(points=list(s.points), mode=s.mode, width=s.width, color=s.color))
        selector.draw(canvas=canvas, data_uri=drawing.data_uri)
    if request.image is not None:
        crop = CropBox(**request.image.crop.model_dump()) if request.image.crop else None
        selector.upload(request.image.data_uri, crop=crop)
    if request.problem_statement and request.problem_statement.strip():
        selector.type_text(request.problem_statement)
    return selector.to_problem_input()


async def until_disconnected(
    http_request,
    source: AsyncIterator,
    poll_seconds: float = DISCONNECT_POLL_SECONDS
) -> AsyncIterator:
    """Relay `source` until the client goes away, checking even while the source is idle."""
    pending = None
    try:
        while True:
            pending = asyncio.ensure_future(source.__anext__())
            while True:
                done, _ = await asyncio.wait({pending}, timeout=poll_seconds)
                if done:
                    break
                if await http_request.is_disconnected():
                    logger.info("[Stream] Client disconnected")
                    return
            try:
                item = pending.result()
            except StopAsyncIteration:
                return
            pending = None
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await source.aclose()


# ============================================================================
# LIFECYCLE & APP
# ============================================================================

def create_app(app_settings: Settings = settings, services: Optional[AppServices] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up Equation Ace Backend...")
        app.state.services = services or await create_services(app_settings)
        yield
        logger.info("Shutting down...")
        await app.state.services.close()

    app = FastAPI(
        title="Equation Ace API",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EquationAceError)
    async def equation_ace_error_handler(request: Request, exc: EquationAceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    register_routes(app)
    return app


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: AppServices = Depends(get_services)):
        return HealthResponse(
            status="healthy",
            environment=services.settings.environment,
            persistence="configured" if services.history is not None else "not configured"
        )

    @app.get("/v1/config", response_model=ConfigResponse)
    async def config_notice(services: AppServices = Depends(get_services)):
        missing = services.settings.missing_persistence_settings()
        return ConfigResponse(
            persistence_configured=services.history is not None,
            missing=missing,
            notice=NOT_CONFIGURED_NOTICE if services.history is None else None
        )

    # --- Consolidated pipeline ------------------------------------------------

    @app.post("/v1/solve", response_model=PipelineOutcome)
    async def solve(
        request: SolveRequest,
        services: AppServices = Depends(get_services),
        user: Optional[User] = Depends(optional_user)
    ):
        try:
            problem_input = await asyncio.to_thread(select_input, request)
        except EquationAceError as e:
            logger.info(f"[Solve] Rejected input: {e.message}")
            return failure_outcome(e)

        logger.info(f"[Solve] Input: {problem_input.kind}, user: {user.uid if user else 'anonymous'}")
        return await services.pipeline.run(problem_input, user=user)

    # --- Legacy three-step pipeline --------------------------------------------

    @app.post("/v1/extract", response_model=ExtractResponse)
    async def extract(
        request: ExtractRequest,
        services: AppServices = Depends(get_services),
        user: Optional[User] = Depends(optional_user)
    ):
        thread_id = request.thread_id or str(uuid.uuid4())
        logger.info(f"[Extract] Thread: {thread_id}")
        problem_input = await asyncio.to_thread(select_input, request)
        state = await services.legacy.start(thread_id, problem_input, user_id=user.uid if user else None)
        return ExtractResponse(
            thread_id=thread_id,
            status="awaiting_confirmation",
            ocr_text=state["ocr_text"],
            corrected_text=state["corrected_text"]
        )

    @app.post("/v1/confirm", response_model=ConfirmResponse)
    async def confirm(
        request: ConfirmRequest,
        services: AppServices = Depends(get_services),
        user: Optional[User] = Depends(optional_user)
    ):
        if request.action == "cancel":
            await services.legacy.cancel(request.thread_id)
            return ConfirmResponse(thread_id=request.thread_id, status="cancelled")

        state = await services.legacy.confirm(request.thread_id, edited_text=request.edited_text)
        result = LegacyWorkflow.result_of(state)

        if user is not None and services.history is not None:
            if state["input_type"] == "image":
                mime, data = parse_data_uri(state["input_content"])
                source = "draw" if state["input_source"] == "draw" else "upload"
                problem_input = ImageInput(image_data=data, mime_type=mime, source=source)
            else:
                problem_input = TextInput(statement=state["input_content"])
            services.pipeline.schedule_save(result, problem_input, user)

        return ConfirmResponse(thread_id=request.thread_id, status="solved", result=result)

    # --- Presentation ----------------------------------------------------------

    @app.post("/v1/present", response_model=ResultView)
    async def present(request: PresentRequest, services: AppServices = Depends(get_services)):
        s = services.settings
        return await build_result_view_async(
            request.result,
            is_loading=request.is_loading,
            error=request.error,
            include_explanation=request.include_explanation,
            include_graph=request.include_graph,
            timeout=s.plot_timeout_seconds,
            x_min=s.plot_x_min,
            x_max=s.plot_x_max,
            step=s.plot_step
        )

    @app.post("/v1/explanation/stream")
    async def explanation_stream(request: ExplanationStreamRequest):
        return StreamingResponse(
            typing_stream("\n".join(request.steps), speed_ms=request.speed_ms),
            media_type="text/plain"
        )

    @app.post("/v1/export/text")
    async def export_as_text(result: SolveResult):
        return PlainTextResponse(
            export_text(result),
            headers={"Content-Disposition": 'attachment; filename="equation-solution.txt"'}
        )

    @app.post("/v1/export/pdf")
    async def export_as_pdf(result: SolveResult):
        return Response(
            await asyncio.to_thread(export_pdf, result),
            media_type="application/pdf",
            headers={"Content-Disposition": 'attachment; filename="equation-solution.pdf"'}
        )

    # --- Auth ------------------------------------------------------------------

    @app.post("/v1/auth/sign-in", response_model=SignInResponse)
    async def sign_in(request: SignInRequest, http_request: Request, auth: AuthService = Depends(require_auth)):
        session_token, user = await auth.sign_in(request.id_token, origin=http_request.headers.get("origin"))
        return SignInResponse(
            session_token=session_token,
            user=UserModel(uid=user.uid, email=user.email, display_name=user.display_name)
        )

    @app.post("/v1/auth/sign-out")
    async def sign_out(http_request: Request, auth: AuthService = Depends(require_auth)):
        token = _bearer(http_request)
        if token:
            await auth.sign_out(token)
        return {"status": "signed_out"}

    @app.get("/v1/auth/me", response_model=UserModel)
    async def me(user: User = Depends(require_user)):
        return UserModel(uid=user.uid, email=user.email, display_name=user.display_name)

    @app.get("/v1/auth/stream")
    async def auth_stream(
        http_request: Request,
        user: User = Depends(require_user),
        auth: AuthService = Depends(require_auth)
    ):
        async def events():
            async for event in until_disconnected(http_request, auth.changes()):
                if event.user.uid == user.uid:
                    yield f"data: {json.dumps({'uid': event.user.uid, 'signed_in': event.signed_in})}\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    # --- History ---------------------------------------------------------------

    @app.get("/v1/history", response_model=list[HistoryRecord])
    async def list_history(
        user: User = Depends(require_user),
        history: RedisHistoryStore = Depends(require_history)
    ):
        return await history.list_for_owner(user.uid)

    @app.get("/v1/history/stream")
    async def history_stream(
        http_request: Request,
        user: User = Depends(require_user),
        history: RedisHistoryStore = Depends(require_history)
    ):
        async def events():
            async for snapshot in until_disconnected(http_request, history.watch(user.uid)):
                payload = json.dumps([record.model_dump(mode="json") for record in snapshot])
                yield f"data: {payload}\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    @app.get("/v1/images/{owner_id}/{name}")
    async def get_image(owner_id: str, name: str, history: RedisHistoryStore = Depends(require_history)):
        data_uri = await history.get_image(owner_id, name)
        if data_uri is None:
            return JSONResponse(status_code=404, content={"error": "Not Found", "message": "Image not found."})
        mime, data = parse_data_uri(data_uri)
        return Response(data, media_type=mime)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.backend_port, reload=True)
