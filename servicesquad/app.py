import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from config.conf import settings
from db.init_db import init_db
from db.redis_db import check_redis_connection
from dtos.dtos import APIError, APIResponse
from jobs.worker import broker
from routes import availability, bookings, notifications, streams, tracking
from services.container import Container
from services.exceptions import DomainError

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(success=False, error=APIError(code=code, message=message)).model_dump(),
    )


async def domain_exception_handler(request: Request, exc: DomainError):
    return _error(exc.status_code, exc.code, exc.message)


async def http_exception_handler(request: Request, exc: HTTPException):
    return _error(exc.status_code, "HTTP_ERROR", str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
    return _error(422, "VALIDATION_ERROR", message)


def create_app(container: Optional[Container] = None, create_tables: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            await init_db()
        app.state.container = container or Container()
        redis_client = getattr(app.state.container.publisher, "redis", None)
        if redis_client is not None:
            await check_redis_connection(redis_client)

        # Start Taskiq broker so tasks can be enqueued
        await broker.startup()
        logger.info("%s ready", settings.app_name)

        yield

        await app.state.container.aclose()
        # Shutdown broker gracefully
        await broker.shutdown()

    app = FastAPI(title="ServiceSquad API", lifespan=lifespan)

    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.include_router(availability.router)
    app.include_router(bookings.router)
    app.include_router(tracking.router)
    app.include_router(notifications.router)
    app.include_router(streams.router)

    @app.get("/health")
    async def health():
        return {"Health": "OK"}

    return app


app = create_app()


# define main
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
