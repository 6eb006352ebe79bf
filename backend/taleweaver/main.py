import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Must run before app modules are imported — the Gemini client reads GEMINI_API_KEY
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from taleweaver import image_utils, story_arc
from taleweaver.errors import (
    ImageEncodingFailure,
    ImageTooLarge,
    InvalidChoice,
    InvalidTransition,
    NotFound,
)
from taleweaver.models import AdvanceRequest, HistoryEntry, StartRequest, StoryArc, StoryView
from taleweaver.story_controller import StoryController

logger = logging.getLogger(__name__)


def _controller(request: Request) -> StoryController:
    return request.app.state.controller


def create_app(controller: StoryController | None = None) -> FastAPI:
    """Build an app that owns exactly one story controller."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Story controller ready")
        yield
        app.state.controller.restart()

    app = FastAPI(title="Taleweaver API", lifespan=lifespan)
    app.state.controller = controller or StoryController()

    # Restrict CORS to known frontends; fall back to env var for deployed environments
    allowed_origins = os.getenv(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:3000,http://localhost:5173",
    ).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["content-type"],
    )

    # -----------------------------------------------------------------------
    # REST Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/story")
    async def get_story(request: Request) -> StoryView:
        return _controller(request).view()

    @app.post("/api/story/start")
    async def post_story_start(body: StartRequest, request: Request) -> StoryView:
        controller = _controller(request)
        image = None
        if body.image_data_url:
            try:
                image = image_utils.image_from_data_url(body.image_data_url)
            except ImageTooLarge as e:
                raise HTTPException(status_code=413, detail=str(e))
            except ImageEncodingFailure as e:
                raise HTTPException(status_code=400, detail=str(e))
        try:
            await controller.start(body.premise, body.genre, body.tone, image)
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        return controller.view()

    @app.post("/api/story/advance")
    async def post_story_advance(body: AdvanceRequest, request: Request) -> StoryView:
        controller = _controller(request)
        try:
            await controller.advance(body.choice)
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InvalidChoice as e:
            raise HTTPException(status_code=422, detail=str(e))
        return controller.view()

    @app.post("/api/story/restart")
    async def post_story_restart(request: Request) -> StoryView:
        controller = _controller(request)
        controller.restart()
        return controller.view()

    @app.get("/api/story/arc")
    async def get_story_arc(request: Request) -> StoryArc:
        controller = _controller(request)
        if controller.tree is None or controller.current_id is None:
            raise HTTPException(status_code=404, detail="No story in progress")
        try:
            return story_arc.build_arc(controller.tree, controller.current_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/api/story/history")
    async def get_story_history(request: Request) -> list[HistoryEntry]:
        return _controller(request).history()

    return app


app = create_app()
