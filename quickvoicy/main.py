from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quickvoicy.api.routes.invoices import router as invoices_router
from quickvoicy.core.log import setup_logging
from quickvoicy.db.session import init_db

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Quickvoicy")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"ok": True}

    app.include_router(invoices_router)

    @app.on_event("startup")
    async def _startup():
        init_db()
        # Payment monitor runs inside the API process
        from quickvoicy.services.scheduler import start_scheduler
        await start_scheduler()

    @app.on_event("shutdown")
    async def _shutdown():
        from quickvoicy.services.scheduler import stop_scheduler
        await stop_scheduler()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from quickvoicy.core.config import settings

    uvicorn.run("quickvoicy.main:app", host=settings.app_host, port=settings.app_port)
