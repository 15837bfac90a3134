import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.routes.accounts import router as accounts_router
from backend.app.api.routes.anomalies import router as anomalies_router
from backend.app.api.routes.audit import router as audit_router
from backend.app.api.routes.recurring import router as recurring_router
from backend.app.api.routes.subscriptions import router as subscriptions_router
from backend.app.api.routes.transfers import router as transfers_router
from backend.app.domain.errors import NotFoundError, ValidationError


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = ["http://localhost:5173", "http://127.0.0.1:5173"]
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    return origins


app = FastAPI(title="Transaction Intelligence API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(accounts_router)
app.include_router(transfers_router)
app.include_router(recurring_router)
app.include_router(subscriptions_router)
app.include_router(anomalies_router)
app.include_router(audit_router)


@app.get("/health")
def health():
    return {"ok": True}
