"""FastAPI application factory for the mod host.

Endpoints: /health, the /mods query API, /patches, and the operational
entry points (load, unload, reload). The app owns one ModHost on
``app.state.host``.
"""
from __future__ import annotations

import time

from fastapi import FastAPI, Request

from modcore import metrics
from modcore.config import get_config
from modcore.host import ModHost, get_mod_host
from modcore.log import configure_logging
from modhost.api.routes.mods import router as mods_router


def create_app(host: ModHost | None = None) -> FastAPI:
    configure_logging(get_config().logging)
    app = FastAPI(
        title="modcore host",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
    )
    app.state.host = host if host is not None else get_mod_host()

    @app.get("/health")
    def health():  # noqa: D401
        h: ModHost = app.state.host
        return {
            "status": "ok",
            "loaded": len(h.get_loaded_mods()),
            "load_status": h.get_load_metrics().status,
        }

    app.include_router(mods_router)

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):  # noqa: D401
        start = time.time()
        labels = {"route": request.url.path, "method": request.method}
        response = await call_next(request)
        metrics.inc("api_request_total", labels)
        metrics.observe(
            "api_request_latency_ms", (time.time() - start) * 1000.0, labels
        )
        if response.status_code >= 400:
            metrics.inc(
                "api_request_errors_total",
                labels | {"status": response.status_code},
            )
        return response

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "modhost.api.app:app", host="127.0.0.1", port=8000, reload=False
    )


if __name__ == "__main__":  # pragma: no cover
    main()
