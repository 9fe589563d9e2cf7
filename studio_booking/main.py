from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studio_booking.core.config import Settings, get_settings
from studio_booking.core.container import Container
from studio_booking.core.logging import setup_logging
from studio_booking.api.v1.chat.router import router as chat_router
from studio_booking.api.v1.public.router import router as availability_router
from studio_booking.api.v1.payments.router import router as payments_router
from studio_booking.api.v1.bookings.router import router as bookings_router


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or Container(settings)
        await app.state.container.startup()
        yield
        await app.state.container.shutdown()

    app = FastAPI(
        title="Studio Booking Engine",
        description="Conversational booking with M-Pesa deposits",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(chat_router, prefix="/api/v1")
    app.include_router(availability_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(bookings_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
