"""
Peon HTTP Main Module.

This module provides the FastAPI application exposing Peon over HTTP:

- GitHub webhook receiver (POST /webhooks), verifying payload signatures
- Read-only build API (repositories, builds and their steps)
- Health check for monitoring

The application owns a Peon instance: it is started when the application
starts (stale build sweep, watchers) and stopped on shutdown.

Dependencies:
    - FastAPI for the web framework
    - Pydantic for response models
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .models import Build, Repo, Step
from .peon import Peon

logger = logging.getLogger("peon.http")


class BuildDetail(BaseModel):
    """A build with its step timeline."""

    build: Build
    steps: List[Step]


class WebhookResponse(BaseModel):
    accepted: bool
    build_id: Optional[int] = None


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check a GitHub X-Hub-Signature header (HMAC-SHA1 of the raw body)."""
    if not signature or not signature.startswith("sha1="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()
    return hmac.compare_digest(f"sha1={expected}", signature)


def create_app(peon: Optional[Peon] = None) -> FastAPI:
    """
    Create the FastAPI application around a Peon instance.

    Args:
        peon: Service to expose; built from the global settings when omitted
    """
    peon = peon or Peon(settings)
    config = peon.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await peon.start()
        try:
            yield
        finally:
            await peon.stop()

    app = FastAPI(title=config.api_title, version=config.api_version, lifespan=lifespan)
    app.state.peon = peon

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing information."""
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "HTTP request processed",
                extra={
                    "request": {
                        "method": request.method,
                        "path": request.url.path,
                        "client_ip": request.client.host if request.client else None,
                        "user_agent": request.headers.get("user-agent"),
                    },
                    "response": {
                        "status_code": getattr(response, "status_code", 500),
                        "duration_ms": int(duration_ms),
                    },
                },
            )

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": config.api_version,
            "timestamp": time.time(),
        }

    @app.post("/webhooks", response_model=WebhookResponse, status_code=202)
    async def receive_webhook(request: Request):
        """
        Receive a GitHub webhook event.

        When a webhook secret is configured, the X-Hub-Signature header must
        carry the HMAC-SHA1 of the raw body. Events other than push are
        accepted and ignored.

        Raises:
            HTTPException: 404 if webhooks are disabled
            HTTPException: 401 if the signature is missing or invalid
            HTTPException: 400 if the event header or JSON body is invalid
        """
        if not config.webhooks_enabled:
            raise HTTPException(404, "Webhooks are disabled")

        body = await request.body()
        if config.webhooks_secret and not verify_signature(
            config.webhooks_secret, body, request.headers.get("x-hub-signature")
        ):
            raise HTTPException(401, "Invalid signature")

        event = request.headers.get("x-github-event")
        if not event:
            raise HTTPException(400, "Missing X-GitHub-Event header")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(400, "Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(400, "Invalid JSON payload")

        logger.debug(
            f"received {event}",
            extra={"props": {"module": "webhooks", "delivery": request.headers.get("x-github-delivery")}},
        )
        build = peon.dispatch(event, payload)
        return WebhookResponse(accepted=True, build_id=build.id if build else None)

    @app.get("/repos", response_model=List[Repo])
    def list_repos():
        return peon.db.get_repos()

    @app.get("/repos/{name}/builds", response_model=List[Build])
    def list_repo_builds(name: str):
        """
        List builds of a repository, most recently updated first.

        Raises:
            HTTPException: 404 if the repository is unknown
        """
        repo = peon.db.get_repo_by_name(name)
        if repo is None:
            raise HTTPException(404, "Repository not found")
        return peon.db.get_builds(repo.id)

    @app.get("/builds/{build_id}", response_model=BuildDetail)
    def get_build(build_id: int):
        """
        Get a build with its steps.

        Raises:
            HTTPException: 404 if the build is unknown
        """
        build = peon.db.get_build(build_id)
        if build is None:
            raise HTTPException(404, "Build not found")
        return BuildDetail(build=build, steps=peon.db.get_steps(build_id))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors with a 422 JSON response."""
        errors = []
        for error in exc.errors():
            error_dict = {
                "type": error.get("type"),
                "loc": error.get("loc", []),
                "msg": str(error.get("msg", "")),
                "input": (
                    str(error.get("input", "")) if error.get("input") is not None else None
                ),
            }
            if "ctx" in error and error["ctx"]:
                error_dict["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
            errors.append(error_dict)
        logger.warning(
            "validation_error",
            extra={"props": {"path": request.url.path, "errors": errors}},
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle HTTP exceptions (4xx and 5xx errors)."""
        logger.warning(
            "http_exception",
            extra={
                "props": {
                    "path": request.url.path,
                    "status": exc.status_code,
                    "detail": str(exc.detail),
                }
            },
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions without exposing internal details."""
        logger.exception("unhandled_exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    return app
