import json
import os
import sys
from typing import Callable

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
API_DIR = os.path.join(BASE_DIR, "apps", "api")
if API_DIR not in sys.path:
    sys.path.append(API_DIR)


def _simple_error_app(detail: str) -> Callable:
    async def app(scope, receive, send):
        if scope["type"] != "http":
            return
        body = json.dumps({"detail": detail}).encode("utf-8")
        await send(
            {
                "type": "http.response.start",
                "status": 500,
                "headers": [(b"content-type", b"application/json")],
            }
        )
        await send({"type": "http.response.body", "body": body})

    return app


try:
    from lessonforge.main import app as inner_app, lifespan as inner_lifespan
except Exception as exc:  # pragma: no cover
    # Surface import errors in serverless logs instead of crashing the function.
    detail = f"LessonForge import failed: {type(exc).__name__}: {exc}"
    print("API import failed", detail)
    app = _simple_error_app(detail)
else:
    from contextlib import asynccontextmanager

    from fastapi import FastAPI

    @asynccontextmanager
    async def _lifespan(_outer):
        # Mounted apps do not get lifespan events; run the inner one here.
        async with inner_lifespan(inner_app):
            yield

    app = FastAPI(title="LessonForge API", lifespan=_lifespan)
    # Mount under /api so /api/generate resolves when routed to this function.
    app.mount("/api", inner_app)
