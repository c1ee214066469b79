from __future__ import annotations

from dotenv import load_dotenv
from fastapi import FastAPI

from src.app.ratelimit import RateLimitExceeded, rate_limit_exceeded_handler
from src.app.routes.ai import router as ai_router
from src.app.routes.analytics import router as analytics_router
from src.app.routes.bills import router as bills_router
from src.app.routes.health import router as health_router
from src.app.routes.nudges import router as nudges_router
from src.app.routes.security import router as security_router
from src.db.init_db import init_db


load_dotenv()


def create_app() -> FastAPI:
    app = FastAPI(title="RythmIQ", version="0.1.0")

    @app.on_event("startup")
    def _startup() -> None:
        init_db()

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.include_router(health_router)
    app.include_router(ai_router)
    app.include_router(analytics_router)
    app.include_router(nudges_router)
    app.include_router(bills_router)
    app.include_router(security_router)
    return app


app = create_app()
