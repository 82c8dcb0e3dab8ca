"""Main FastAPI application module for the puzzle generator."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from puzzle_forge.config import configure_logging, settings
from puzzle_forge.exceptions import PuzzleNotFoundError, PuzzleValidationError
from puzzle_forge.models.puzzle_model import PuzzleCreatedResponse, PuzzleSummary
from puzzle_forge.services.coordinator import CoordinatorRegistry
from puzzle_forge.services.job_orchestrator import PuzzleJobRunner
from puzzle_forge.services.job_queue import ThreadPoolJobTrigger
from puzzle_forge.services.puzzle_service import PuzzleService
from puzzle_forge.services.storage import create_stores

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the stores and job workers, and resume unfinished jobs."""
    configure_logging()
    stores = create_stores(settings)
    coordinators = CoordinatorRegistry(stores.metadata, stores.coordinator_state)
    runner = PuzzleJobRunner(stores.blobs, stores.metadata, coordinators, settings)
    trigger = ThreadPoolJobTrigger(runner, max_workers=settings.JOB_WORKERS)
    service = PuzzleService(stores.blobs, stores.metadata, coordinators, trigger, settings)
    app.state.puzzle_service = service

    service.resume_pending_jobs()
    yield

    logger.info("Shutting down job workers")
    trigger.shutdown(wait=True)


# Initialize FastAPI app
app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_puzzle_service(request: Request) -> PuzzleService:
    """Dependency returning the service built at startup."""
    return request.app.state.puzzle_service


def _parse_piece_count(value: Optional[str]) -> int:
    if value is None or value == "":
        return settings.DEFAULT_PIECE_COUNT
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid piece count: {value}")


@app.get("/health")
def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post(f"{settings.API_V1_STR}/puzzles", status_code=202, response_model=PuzzleCreatedResponse)
async def create_puzzle(
    file: Optional[UploadFile] = None,
    name: Optional[str] = Form(None),
    piece_count: Optional[str] = Form(None, alias="pieceCount"),
    service: PuzzleService = Depends(get_puzzle_service),
) -> dict:
    """Upload an image and start generating its puzzle.

    Args:
        file: The source image file.
        name: Display name; defaults to the file name.
        piece_count: Requested number of pieces.
        service: Puzzle service.

    Returns:
        The new puzzle id and its processing status.

    Raises:
        HTTPException: If the file is missing, too large, of an unsupported
            type, or the piece count is invalid.
    """
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")

    if file.content_type not in settings.ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=415, detail=f"Unsupported image type: {file.content_type}")

    if file.size and file.size > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")

    data = await file.read()
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")

    count = _parse_piece_count(piece_count)
    title = name or Path(file.filename or "").stem or "Untitled Puzzle"
    try:
        record = service.create_puzzle(title, data, file.content_type, count)
    except PuzzleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return PuzzleCreatedResponse(puzzle_id=record.id, status=record.status).to_json_dict()


@app.get(f"{settings.API_V1_STR}/puzzles")
def list_puzzles(service: PuzzleService = Depends(get_puzzle_service)) -> List[dict]:
    """List all puzzles, newest first."""
    summaries: List[PuzzleSummary] = service.list_puzzles()
    return [summary.to_json_dict() for summary in summaries]


@app.get(f"{settings.API_V1_STR}/puzzles/{{puzzle_id}}")
def get_puzzle(puzzle_id: str, service: PuzzleService = Depends(get_puzzle_service)) -> dict:
    """Return the full puzzle record."""
    record = service.get_puzzle(puzzle_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Puzzle not found")
    return record.to_json_dict()


@app.get(f"{settings.API_V1_STR}/puzzles/{{puzzle_id}}/thumbnail")
def get_thumbnail(puzzle_id: str, service: PuzzleService = Depends(get_puzzle_service)) -> Response:
    """Return the puzzle's JPEG thumbnail."""
    result = service.get_thumbnail(puzzle_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    data, content_type = result
    return Response(content=data, media_type=content_type)


@app.get(f"{settings.API_V1_STR}/puzzles/{{puzzle_id}}/pieces/{{piece_id}}")
def get_piece_image(
    puzzle_id: str, piece_id: int, service: PuzzleService = Depends(get_puzzle_service)
) -> Response:
    """Return one piece as a transparent PNG."""
    result = service.get_piece_image(puzzle_id, piece_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Piece not found")
    data, content_type = result
    return Response(content=data, media_type=content_type)


@app.delete(f"{settings.API_V1_STR}/puzzles/{{puzzle_id}}")
def delete_puzzle(puzzle_id: str, service: PuzzleService = Depends(get_puzzle_service)) -> dict:
    """Delete a puzzle and its images."""
    try:
        result = service.delete_puzzle(puzzle_id)
    except PuzzleNotFoundError:
        raise HTTPException(status_code=404, detail="Puzzle not found")
    if not result.deleted:
        raise HTTPException(status_code=409, detail="Deletion already in progress")
    return {"puzzleId": puzzle_id, "deleted": True, "failedKeys": result.failed_keys}
