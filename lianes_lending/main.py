from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routers import books, loans, reservations, users
from .core.config import get_settings
from .core.log import configure_logging
from .errors import LendingError
from .services.lending import LendingService, build_service
from .services.sweeper import ReservationSweeper

STATUS_BY_KIND = {
    "not_found": 404,
    "book_unavailable": 409,
    "already_returned": 409,
    "already_terminal": 409,
    "duplicate_reservation": 409,
    "borrow_limit_exceeded": 409,
    "validation_error": 422,
    "malformed_document": 422,
    "conflict": 503,
    "transient_failure": 503,
}


def create_app(service: LendingService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal service
        if service is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            service = build_service(settings)
        app.state.service = service
        sweeper = None
        if service.settings.sweep_interval_seconds > 0:
            sweeper = ReservationSweeper(service, service.settings.sweep_interval_seconds)
            sweeper.start()
        yield
        if sweeper is not None:
            sweeper.stop(timeout=5)

    app = FastAPI(
        title="Liane's Library Lending API",
        version="0.2.0",
        lifespan=lifespan,
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=STATUS_BY_KIND.get(exc.kind, 400), content=exc.to_dict())

    @app.get("/health")
    def healthcheck():
        return {"status": "ok"}

    app.include_router(books.router, prefix="/books", tags=["books"])
    app.include_router(loans.router, prefix="/loans", tags=["loans"])
    app.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
    app.include_router(users.router, prefix="/users", tags=["users"])
    return app


app = create_app()
