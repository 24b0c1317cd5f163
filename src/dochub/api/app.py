from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dochub.api.routes import http_status_for
from dochub.api.routes import router as api_router
from dochub.config import get_settings
from dochub.core.runtime import get_bulk_registry
from dochub.db.init import init_database
from dochub.errors import LetterWorkflowError
from dochub.logging_config import configure_logging


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        init_database()

    @app.exception_handler(LetterWorkflowError)
    def _workflow_error(_: Request, exc: LetterWorkflowError) -> JSONResponse:
        return JSONResponse(status_code=http_status_for(exc), content={"detail": exc.to_dict()})

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "environment": settings.app_env,
                "running_bulk_operations": get_bulk_registry().running(),
            }
        )

    app.include_router(api_router)
    return app
