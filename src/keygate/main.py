import logging
import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from keygate.config import settings
from keygate.logging import setup_logging
from keygate.core.errors import GatewayError, StorageUnavailable, ValidationError
from keygate.core.request_id import RequestIdMiddleware
from keygate.core.usage_logging import UsageLoggingMiddleware
from keygate.api.health import router as health_router
from keygate.api.admin import router as admin_router
from keygate.api.gateway import router as gateway_router
from keygate.deps.db import engine
from keygate.deps.gate import get_auth_gate, get_sweeper
from keygate.deps.redis import close_redis


setup_logging(settings.log_level)
logger = logging.getLogger("keygate")

app = FastAPI(title="Keygate", version="0.1.0")

# added first = innermost; request ids must exist before usage is recorded
app.add_middleware(UsageLoggingMiddleware, get_gate=get_auth_gate)
app.add_middleware(RequestIdMiddleware)
app.include_router(health_router)
app.include_router(admin_router)
app.include_router(gateway_router)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    body = ValidationError().to_body()
    body["errors"] = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    return JSONResponse(status_code=ValidationError.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    # integrity violations are bugs, not outages
    if isinstance(exc, IntegrityError):
        raise exc
    logger.error("storage_unavailable", extra={"error": type(exc).__name__, "path": request.url.path})
    err = StorageUnavailable()
    return JSONResponse(status_code=err.status_code, content=err.to_body())


@app.on_event("startup")
async def startup():
    get_sweeper().start()

@app.on_event("shutdown")
async def shutdown():
    await get_sweeper().stop()
    await get_auth_gate().recorder.drain()
    await close_redis()
    await engine.dispose()

@app.middleware("http")
async def log_completed_requests(request: Request, call_next):
    response = await call_next(request)

    request_id = getattr(request.state, "request_id", None)
    if request_id:
        logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
            },
        )

    return response


def run() -> None:
    uvicorn.run("keygate.main:app", host=settings.app_host, port=settings.app_port)
