"""FastAPI app for the local proxy."""

from __future__ import annotations

import logging
import time

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response

from providerbridge.adapters.provider.client import ModelProvider
from providerbridge.adapters.proxy.cors import cors_headers, evaluate_origin
from providerbridge.adapters.proxy.responses import proxy_error_response
from providerbridge.adapters.proxy.router import router as proxy_router
from providerbridge.config.manager import ConfigurationProvider


def create_proxy_app(
    *,
    config_provider: ConfigurationProvider,
    model_provider: ModelProvider,
    upstream_client: httpx.AsyncClient,
    logger: logging.Logger,
    title: str = "ProviderBridge",
) -> FastAPI:
    app = FastAPI(title=title, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config_provider = config_provider
    app.state.model_provider = model_provider
    app.state.upstream_client = upstream_client
    app.state.logger = logger
    app.include_router(proxy_router)

    @app.middleware("http")
    async def cors_boundary_middleware(request: Request, call_next):
        started = time.monotonic()
        origin = request.headers.get("origin")
        decision = evaluate_origin(origin)
        if origin and not decision.allowed:
            logger.warning("blocked CORS request from unauthorized origin=%s", origin)
        logger.debug("%s %s", request.method, request.url.path)

        if request.method.upper() == "OPTIONS":
            response: Response = Response(status_code=200)
        else:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("proxy unhandled exception path=%s", request.url.path)
                response = proxy_error_response(500, "Internal Server Error")

        for name, value in cors_headers(decision).items():
            response.headers[name] = value
        logger.debug(
            "%s %s completed status=%s in %.0fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000,
        )
        return response

    return app
