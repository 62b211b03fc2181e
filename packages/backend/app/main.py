from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from app.api.v1.auth import router as auth_router
from app.api.v1.invites import router as invites_router
from app.api.v1.keys import router as keys_router
from app.api.v1.org import router as org_router
from app.core.logging import configure_logging
from app.core.middleware import CSRFMiddleware, SecurityHeadersMiddleware
from app.core.problems import register_exception_handlers
from app.core.settings import settings
from app.db import model_registry as _model_registry  # noqa: F401
from app.db.session import SessionLocal
from app.services.activity import activity_recorder
from app.services.rate_limit import counter_store


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await activity_recorder.drain()


def create_app() -> FastAPI:
    configure_logging(level=settings.log_level, json_output=settings.is_production)
    activity_recorder.bind(SessionLocal)
    counter_store.bind(SessionLocal)

    application = FastAPI(title="Kindling API", lifespan=lifespan)
    application.add_middleware(CSRFMiddleware)
    application.add_middleware(SecurityHeadersMiddleware)
    register_exception_handlers(application)

    application.include_router(auth_router)
    application.include_router(org_router)
    application.include_router(keys_router)
    application.include_router(invites_router)

    @application.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port, reload=True)
