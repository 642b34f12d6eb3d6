# api/main.py
"""
FastAPI web API for screenshot chess coaching.

This module exposes the coaching pipeline over HTTP: a Chess.com screenshot
and the moves played so far go in, and a coaching message comes out in a JSON
envelope.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import ollama
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

# Add the project root to the Python path to allow importing from parent
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api.schemas import CoachingResponse
from core.analysis import CoachingProcessor, build_processor
from core.errors import BAD_REQUEST, INTERNAL, PAYLOAD_TOO_LARGE, CoachingError, InvalidInputError, UploadTooLargeError
from core.settings import configure_logging, settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the long-lived HTTP and Ollama clients once per application."""
    configure_logging(settings.log_level)
    async with httpx.AsyncClient(timeout=settings.engine_timeout_s) as http_client:
        ollama_client = ollama.AsyncClient(host=settings.ollama_host, timeout=settings.ai_timeout_s)
        app.state.processor = build_processor(settings, http_client, ollama_client)
        logger.info("Coaching pipeline ready (model=%s, vision=%s, engine=%s)",
                    settings.ollama_model, settings.ollama_vision_model, settings.chess_api_url)
        yield


app = FastAPI(
    title="Chess Screenshot Coach API",
    description="API for turning a chess screenshot and move list into coaching advice",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def get_processor(request: Request) -> CoachingProcessor:
    """FastAPI dependency that provides the application's coaching pipeline."""
    return request.app.state.processor


def _envelope(status_code: int, *, best_move: Optional[str] = None, advice: Optional[str] = None,
              error: Optional[str] = None) -> JSONResponse:
    body = CoachingResponse(success=error is None, best_move=best_move, advice=advice, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def _error_response(e: Exception) -> JSONResponse:
    """Map a pipeline exception to the HTTP status and message the client sees."""
    if isinstance(e, UploadTooLargeError):
        logger.info("File too large: %s", e)
        return _envelope(413, error=PAYLOAD_TOO_LARGE.message)
    if isinstance(e, InvalidInputError):
        logger.info("Invalid input: %s", e)
        return _envelope(400, error=f"Invalid input: {e}")
    if isinstance(e, CoachingError):
        logger.error("Chess coaching failed: %s (context: %s)", e, e.context())
        return _envelope(500, error=f"Chess coaching analysis failed: {e}")
    logger.exception("Unexpected error while coaching")
    return _envelope(500, error=INTERNAL.message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    logger.info("Rejected malformed request to %s: %s", request.url.path, problems)
    return _envelope(400, error=f"{BAD_REQUEST.message} {problems}")


@app.get("/")
def read_root():
    """
    Root endpoint that returns a welcome message.
    """
    return {"message": "Welcome to the Chess Screenshot Coach API! POST a screenshot and moves to /api/coach."}


@app.get("/api/test", response_class=PlainTextResponse)
def test_endpoint():
    return "This is a test"


@app.post("/api/coach", response_model=CoachingResponse)
async def get_coaching(
    screenshot: UploadFile = File(..., description="Screenshot of the Chess.com game."),
    moves: str = Form("", description="Moves so far in algebraic notation, e.g. 'e4 e5 Nf3 Nc6'."),
    depth: Optional[int] = Form(None, ge=1, le=18, description="Engine depth override."),
    processor: CoachingProcessor = Depends(get_processor),
):
    """
    Analyzes a screenshot and move list and returns coaching advice for the user.
    """
    logger.info("Coaching request: file=%s type=%s moves=%r",
                screenshot.filename, screenshot.content_type, moves)
    try:
        # Read one byte past the limit so oversized uploads are detected without reading them fully
        image_bytes = await screenshot.read(settings.max_upload_bytes + 1)
        if len(image_bytes) > settings.max_upload_bytes:
            raise UploadTooLargeError(f"Screenshot exceeds {settings.max_upload_bytes} bytes")

        result = await processor.coach_position(
            image_bytes,
            moves,
            mime_type=screenshot.content_type or "image/png",
            depth=depth,
        )
    except Exception as e:
        return _error_response(e)
    finally:
        await screenshot.close()

    return _envelope(200, best_move=result.best_move, advice=result.advice)
