from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..archive import Archive
from ..config import Settings
from ..errors import (
    ArchiveError,
    BulkOperationError,
    DuplicateCategory,
    NotFoundError,
    StorageUnavailable,
    ValidationError,
)


# --- Application Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Opens storage (falling back to the blob store if needed) and loads the catalog."""
    settings = Settings.from_env()
    app.state.archive = await Archive.open(settings)
    try:
        yield
    finally:
        await app.state.archive.close()


# --- Application Initialization ---
app = FastAPI(
    title="outfit-archive",
    description="A personal image catalog with free and structured tags.",
    version=__version__,
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Archive Dependency ---
def get_archive(request: Request) -> Archive:
    return request.app.state.archive


# --- Error Handling ---
# Every failure reaches the client as a single human-readable message.
_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (DuplicateCategory, 409),
    (StorageUnavailable, 503),
]


@app.exception_handler(ArchiveError)
async def archive_error_handler(request: Request, exc: ArchiveError):
    status_code = 500
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    content = {"detail": exc.message}
    if isinstance(exc, BulkOperationError):
        content.update(succeeded=exc.succeeded, failed=exc.failed)
    return JSONResponse(content, status_code=status_code)


# Import routes after the app and its dependencies are set up
from . import routes  # noqa: E402,F401
