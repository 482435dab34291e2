from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router
from .config import settings
from .db import ensure_paths, init_db
from .logging_config import configure_logging


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_paths()
    init_db()
    yield


def create_app() -> FastAPI:
    configure_logging()
    ensure_paths()
    init_db()

    app = FastAPI(title="Gradefix API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
