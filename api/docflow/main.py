import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL
from .db import init_db
from .errors import AccessError, DocflowError, InvalidTransition, NotFound, TransientIOFailure, ValidationError
from .routers import contracts, invoices, public, templates, webhooks

logger = logging.getLogger(__name__)

LINK_INVALID_MESSAGE = "This link is no longer valid."


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


app = FastAPI(title="Docflow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()


def _error(status_code: int, exc: DocflowError, message: str = None, details: dict = None):
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": message or exc.message, "details": exc.details if details is None else details},
    )


@app.exception_handler(AccessError)
def access_error(request: Request, exc: AccessError):
    # one answer for unknown, expired and revoked links
    logger.info("public link rejected path=%s reason=%s", request.url.path, type(exc).__name__)
    return JSONResponse(status_code=404, content={"code": AccessError.code, "message": LINK_INVALID_MESSAGE, "details": {}})


@app.exception_handler(InvalidTransition)
def invalid_transition(request: Request, exc: InvalidTransition):
    return _error(409, exc)


@app.exception_handler(ValidationError)
def validation_error(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.exception_handler(NotFound)
def not_found(request: Request, exc: NotFound):
    return _error(404, exc)


@app.exception_handler(TransientIOFailure)
def transient_failure(request: Request, exc: TransientIOFailure):
    logger.warning("collaborator unavailable path=%s: %s", request.url.path, exc.message)
    return _error(503, exc, details={})


@app.exception_handler(DocflowError)
def docflow_error(request: Request, exc: DocflowError):
    logger.error("unhandled %s path=%s: %s", type(exc).__name__, request.url.path, exc.message)
    return _error(500, exc)


app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(contracts.router, prefix="/api/contracts", tags=["contracts"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
app.include_router(public.router, prefix="/api/public", tags=["public"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])


@app.get("/")
def root():
    return {"ok": True, "service": "docflow-api"}
