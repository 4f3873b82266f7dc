"""
CollabDesk API application.
"""
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError as SchemaValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from collabdesk.api import brand_response, deals
from collabdesk.core.config import settings
from collabdesk.core.errors import CollabDeskError, GENERIC_ERROR_MESSAGE
from collabdesk.core.logging import setup_logging, get_logger
from collabdesk.db.session import init_db

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION} ({settings.ENVIRONMENT})")
    init_db()
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============= ERROR RENDERING =============
# Every failure is {"success": false, "error": <message>}.

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(CollabDeskError)
async def collabdesk_error_handler(request: Request, exc: CollabDeskError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return _error(exc.status_code, exc.message)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(SchemaValidationError)
async def schema_error_handler(request: Request, exc: SchemaValidationError):
    fields = ", ".join(".".join(str(part) for part in err["loc"][1:]) for err in exc.errors())
    return _error(400, f"Invalid request body: {fields or 'malformed'}")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return _error(500, GENERIC_ERROR_MESSAGE)


# ============= ROUTES =============

app.include_router(brand_response.router)
app.include_router(deals.router)


@app.get("/health")
def health():
    return {"status": "ok", "service": settings.APP_NAME, "version": settings.APP_VERSION}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
