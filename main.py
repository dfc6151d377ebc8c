from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.v1.router import api_router
from core.config import settings
from core.errors import BookingError
from core.logging import configure_logging
from services.container import build_booking_service, ensure_indexes
from services.scheduling.booking import BookingService


configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def create_app(service: Optional[BookingService] = None) -> FastAPI:
    app = FastAPI(title="Clinic Booking Engine", version="0.1.0")

    origins_env = settings.allowed_origins.strip()
    allow_all_origins = origins_env in {"*", '"*"'}
    if allow_all_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        allowed_origins = [o.strip() for o in origins_env.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix="/api/v1")
    app.state.booking_service = service

    @app.exception_handler(BookingError)
    async def _booking_error(request: Request, exc: BookingError) -> JSONResponse:
        level = logging.WARNING if exc.status_code >= 500 else logging.INFO
        logger.log(level, "request.rejected", extra={"path": request.url.path, "kind": exc.kind, "reason": exc.reason})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        first = errors[0] if errors else {"field": "", "message": "invalid input"}
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "reason": f"{first['field']}: {first['message']}",
                "retryable": False,
                "details": {"errors": errors},
            },
        )

    @app.on_event("startup")
    async def _build_service() -> None:
        if app.state.booking_service is None:
            app.state.booking_service = await build_booking_service(settings)
            await ensure_indexes(app.state.booking_service)

    @app.get("/")
    async def root_health() -> dict[str, str]:
        return {"status": "ok"}

    logger.info("Application initialized")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
