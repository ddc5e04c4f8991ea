from fastapi import FastAPI, Request, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import logging
import time
import uuid

import uvicorn

from api_float_ast import router as float_ast_router
from config import API_HOST, API_PORT, CORS_ORIGINS, ENABLE_ORACLE_CONCEPTS, ENABLE_ORACLE_FRAGMENTS, STORAGE_BACKEND
from models_float_ast import FLOAT_AST_VERSION
from services_float_ast import FloatASTValidationError
from services_floatql import QueryValidationError
from services_logging import structured_log_line
from services_model_router import model_router
from storage import get_storage

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("float_ast")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Open the configured backend up front so a bad DB path fails at boot, not on first request
    storage = get_storage()
    logger.info(
        structured_log_line(
            {
                "event": "startup",
                "float_ast_version": FLOAT_AST_VERSION,
                "storage": type(storage).__name__,
                "storage_backend": STORAGE_BACKEND,
                "oracle_available": model_router.available,
                "oracle_concepts": ENABLE_ORACLE_CONCEPTS,
                "oracle_fragments": ENABLE_ORACLE_FRAGMENTS,
            }
        )
    )
    yield
    logger.info(structured_log_line({"event": "shutdown"}))


app = FastAPI(
    title="FloatAST Backend",
    description="Parses conversations into FloatAST documents, evaluates FloatQL and extracts fragments.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(float_ast_router)


@app.middleware("http")
async def request_observability(request: Request, call_next):
    start = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id

    response = None
    try:
        response = await call_next(request)
    finally:
        logger.info(
            structured_log_line(
                {
                    "event": "request",
                    "request_id": request_id,
                    "route": request.url.path,
                    "method": request.method,
                    "status": getattr(response, "status_code", 500),
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                }
            )
        )

    if isinstance(response, Response):
        response.headers["x-request-id"] = request_id
    return response


def _where(request: Request) -> str:
    return f"{request.method} {request.url.path}"


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"HTTP {exc.status_code} on {_where(request)}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies (422). Client errors, so WARNING."""
    logger.warning(f"Request validation failed on {_where(request)}", extra={"errors": exc.errors()})
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(FloatASTValidationError)
async def float_ast_validation_handler(request: Request, exc: FloatASTValidationError):
    """A stored or posted document failed FloatAST validation; every offending entity is listed."""
    logger.warning(f"FloatAST validation failed on {_where(request)}: {exc}")
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(QueryValidationError)
async def query_validation_handler(request: Request, exc: QueryValidationError):
    logger.warning(f"FloatQL rejected on {_where(request)}: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc), "problems": exc.problems})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for anything the handlers above do not cover.
    The stack trace goes to the log; the client only sees a generic message.
    """
    logger.exception(
        f"Unhandled exception on {_where(request)}",
        extra={"exception_type": type(exc).__name__},
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/")
def read_root():
    return {"status": "ok", "message": "FloatAST backend is running", "float_ast_version": FLOAT_AST_VERSION}


def run() -> None:
    """Serve the app with uvicorn (console entry point `float-ast-backend`)."""
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run()
