import asyncio
import contextlib
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from nubstudio.api.deps import AppContext
from nubstudio.api.errors import register_exception_handlers
from nubstudio.api.v1.auth import router as auth_router
from nubstudio.api.v1.recovery import router as recovery_router
from nubstudio.api.v1.two_factor import router as two_factor_router
from nubstudio.core.config import Settings, get_settings
from nubstudio.core.db import Database
from nubstudio.core.logging import configure_logging, correlation_id_var, get_logger, set_correlation_id
from nubstudio.core.security import PasswordHasher, utcnow
from nubstudio.services.mail import MailSender, SmtpMailSender, drain_background
from nubstudio.services.maintenance import maintenance_loop
from nubstudio.services.tokens import TokenIssuer

logger = get_logger(__name__)


# uvicorn nubstudio.main:create_app --factory
def create_app(
    settings: Settings | None = None,
    *,
    mailer: MailSender | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    database = Database(settings.async_database_url)
    ctx = AppContext(
        settings=settings,
        database=database,
        mailer=mailer or SmtpMailSender.from_settings(settings),
        hasher=PasswordHasher(rounds=settings.BCRYPT_ROUNDS),
        tokens=TokenIssuer.from_settings(settings),
        clock=clock or utcnow,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if settings.MAINTENANCE_INTERVAL_SECONDS > 0:
            task = asyncio.create_task(
                maintenance_loop(
                    database, settings.MAINTENANCE_INTERVAL_SECONDS, ctx.hasher, ctx.mailer, ctx.clock
                )
            )
        logger.info("app_started", app=settings.APP_NAME)
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await drain_background()
            await database.dispose()
            logger.info("app_stopped")

    app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)
    app.state.db = database
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = set_correlation_id(request.headers.get("x-request-id"))
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.set(None)
        response.headers["X-Request-ID"] = cid
        return response

    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(recovery_router)
    app.include_router(two_factor_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
