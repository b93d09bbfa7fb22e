import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rpg_codex.json_repair import StructuredOutputError
from rpg_codex.llm import (
    LLM,
    ApiKeyError,
    ContentBlockedError,
    GeminiLLM,
    LLMError,
    LLMOverloadedError,
    MissingApiKeyError,
)
from rpg_codex.routes import router
from rpg_codex.session import EmptyActionError, GameSession, NoActiveGameError, TurnInProgressError
from rpg_codex.storage import Storage

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

# Most specific first
_ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (EmptyActionError, 400),
    (MissingApiKeyError, 400),
    (ApiKeyError, 400),
    (ContentBlockedError, 422),
    (LLMOverloadedError, 503),
    (TurnInProgressError, 409),
    (NoActiveGameError, 404),
    (StructuredOutputError, 502),
    (LLMError, 502),
]


def _error_status(exc: Exception) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


async def _pipeline_error(request: Request, exc: Exception) -> JSONResponse:
    status = _error_status(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


def create_app(data_dir: Path | None = None, llm: LLM | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    storage = Storage(resolved)
    gateway = llm if llm is not None else GeminiLLM(storage.get_settings)
    session = GameSession(storage, gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await session.close()

    app = FastAPI(title="RPG Codex", lifespan=lifespan)
    app.state.storage = storage
    app.state.llm = gateway
    app.state.session = session
    app.include_router(router, prefix="/api")
    for cls in (LLMError, StructuredOutputError, TurnInProgressError, NoActiveGameError, EmptyActionError):
        app.add_exception_handler(cls, _pipeline_error)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
