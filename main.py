import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from clients.llm_client import LLMClient
from clients.perplexity_client import DeepResearchClient
from routes.course_routes import router as course_router
from services.content_store import ContentStore, create_content_store
from services.course_service import CourseService
from services.generation_gate import GenerationGate
from services.lesson_service import LessonService
from services.outline_negotiator import OutlineNegotiator
from utils import settings
from utils.background import BackgroundJobRunner
from utils.exceptions import MicrolearnError

# Configure logging
logger = logging.getLogger(__name__)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

# Seconds to wait for in-flight generation on shutdown
SHUTDOWN_DRAIN_SECONDS = 30


def create_app(
    store: Optional[ContentStore] = None,
    llm=None,
    research_client=None,
    runner: Optional[BackgroundJobRunner] = None
) -> FastAPI:
    """
    Wire services and routes.

    Every collaborator can be injected; anything omitted is built from the
    environment. Nothing here opens a connection: the store and provider
    clients connect on first use.
    """
    store = store or create_content_store(settings.CONTENT_STORE_BACKEND)
    llm = llm or LLMClient()
    runner = runner or BackgroundJobRunner()
    if research_client is None and settings.PERPLEXITY_API_KEY:
        research_client = DeepResearchClient()
    if research_client is None:
        logger.info("PERPLEXITY_API_KEY not set; courses are built without research grounding")

    gate = GenerationGate(store)
    lesson_service = LessonService(store, llm, runner, gate=gate)
    course_service = CourseService(store, lesson_service, runner, research_client=research_client, gate=gate)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if runner.pending_count:
            logger.info(f"Waiting for {runner.pending_count} background task(s) before shutdown")
        await runner.drain(timeout=SHUTDOWN_DRAIN_SECONDS)

    app = FastAPI(title="Microlearn", lifespan=lifespan)
    app.state.store = store
    app.state.runner = runner
    app.state.lesson_service = lesson_service
    app.state.course_service = course_service
    app.state.negotiator = OutlineNegotiator(llm)

    @app.exception_handler(MicrolearnError)
    async def microlearn_exception_handler(request: Request, exc: MicrolearnError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": "INVALID_REQUEST",
                "message": "Request validation failed",
                "context": {"errors": jsonable_encoder(exc.errors())},
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "microlearn"}

    app.include_router(course_router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
