import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.trustedhost import TrustedHostMiddleware

from imaginaryverse.api.router import router
from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import BillingError, SubscriptionPersistenceError

logger = logging.getLogger("imaginaryverse.api")

app = FastAPI(
    title="ImaginaryVerse Billing",
    version="0.4.0",
)


def _allowed_hosts() -> list[str]:
    hosts = [h.strip() for h in settings.ALLOWED_HOSTS.split(",") if h.strip()]
    return hosts or ["*"]


app.add_middleware(TrustedHostMiddleware, allowed_hosts=_allowed_hosts())


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response: Response = await call_next(request)
    if settings.SECURITY_HEADERS_ENABLED:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        if settings.ENV != "dev":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    # Routes that roll back map errors themselves; this covers read-only ones.
    detail = exc.message
    if isinstance(exc, SubscriptionPersistenceError):
        detail = {"message": exc.message, "refund_status": exc.refund_status}
    logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


app.include_router(router)


@app.get("/health")
def health():
    return {"ok": True, "env": settings.ENV}
