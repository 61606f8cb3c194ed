from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core import db
from core.config import configure_logging
from feedback import service as feedback_service
from feedback.router import router as feedback_router

configure_logging()

ENDPOINTS_HELP = {
    "ingest": {
        "method": "POST",
        "path": "/ingest",
        "bodyExample": [
            {
                "source": "Discord",
                "content": "The dashboard feels slow when switching tabs.",
            }
        ],
    },
    "results": {
        "method": "GET",
        "path": "/results",
    },
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Initialize the DB pool once per process, then pick up runs a restart interrupted.
    await db.init_pool()
    await feedback_service.resume_unfinished_runs()
    try:
        yield
    finally:
        await feedback_service.cancel_resumed_runs()
        await db.close_pool()


app = FastAPI(lifespan=lifespan)

app.include_router(feedback_router, tags=["feedback"])


@app.exception_handler(StarletteHTTPException)
async def http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404 and exc.detail == "Not Found":
        # Unknown route: point the caller at what exists.
        return JSONResponse({"error": "Not found.", "endpoints": ENDPOINTS_HELP}, status_code=404)
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/")
def root() -> dict:
    return {"message": "feedback-sentinel api"}
