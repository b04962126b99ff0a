"""FastAPI backend exposing the DLS form capture.

Run: python -m backend.main
  or: uvicorn backend.main:app --port 3000
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from backend.dls_capture import CaptureSettings, capture_dls

load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)-8s %(message)s",
)
log = logging.getLogger("api")

MAX_BODY_BYTES = 10 * 1024 * 1024  # 10 MB
BODY_TOO_LARGE = "Request body exceeds 10mb limit"

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

_settings: CaptureSettings = CaptureSettings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Server started (target %s)", _settings.target_url)
    yield
    log.info("Server stopped")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DLS Capture API",
    description="Fill the Jordan DLS map search form and return a screenshot",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_BODY_BYTES:
        return JSONResponse(
            status_code=413,
            content={"success": False, "error": BODY_TOO_LARGE},
        )
    return await call_next(request)


# Must stay outermost: 413 responses need CORS headers too.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class SubmitRequest(BaseModel):
    fields: dict[str, Any] | None = None


class BodyTooLargeError(Exception):
    pass


async def read_body(request: Request, limit: int = MAX_BODY_BYTES) -> bytes:
    """Read the request body, counting bytes as they arrive.

    Covers chunked uploads, which carry no Content-Length header.
    """
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise BodyTooLargeError(BODY_TOO_LARGE)
        chunks.append(chunk)
    return b"".join(chunks)


def parse_submit_request(raw: bytes) -> SubmitRequest:
    """Parse a /submit-dls body; an empty body means no fields.

    Raises ValueError (json or pydantic) on malformed input.
    """
    if not raw.strip():
        return SubmitRequest()
    return SubmitRequest.model_validate(json.loads(raw))


USAGE_HTML = """
<h2>DLS Capture API is live</h2>
<p>Use <b>POST /submit-dls</b> to send form data for processing.</p>
<p>Example JSON body:</p>
<pre>{
  "fields": {
    "governorate": "محافظة العاصمة",
    "directorate": "اراضي عمان",
    "village": "اليادودة",
    "basin": "123",
    "sector": "جدول الأحياء (0)",
    "parcel": "00123"
  }
}</pre>
"""


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/", response_class=HTMLResponse)
async def usage() -> str:
    return USAGE_HTML


@app.post("/submit-dls")
async def submit_dls(request: Request) -> Any:
    """Fill the DLS form with the given fields and return a screenshot.

    Body: ``{"fields": {...}}`` (JSON, max 10 MB).
    """
    try:
        req = parse_submit_request(await read_body(request))
    except BodyTooLargeError as exc:
        log.warning("Rejected body: %s", exc)
        return JSONResponse(
            status_code=413,
            content={"success": False, "error": str(exc)},
        )
    except ValueError as exc:
        log.warning("Invalid request body: %s", exc)
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Invalid request body: {exc}"},
        )

    fields = req.fields or {}
    log.info("Received fields: %s", json.dumps(fields, ensure_ascii=False, indent=2))

    try:
        result = await capture_dls(fields, _settings)
    except Exception as exc:
        log.error("Capture error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc)},
        )

    return {
        "success": True,
        "message": "DLS form processed successfully!",
        "fields": fields,
        "screenshot": result["screenshot"],
        "field_results": result["field_results"],
    }


@app.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "target_url": _settings.target_url,
        "custom_browser": _settings.executable_path is not None,
    }


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

class ApiServer:
    """uvicorn server around the app with an explicit start/stop lifecycle."""

    def __init__(self, host: str = "0.0.0.0", port: int = 3000) -> None:
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="info"),
        )
        self._task: asyncio.Task | None = None

    @classmethod
    def from_env(cls) -> ApiServer:
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
        )

    @property
    def started(self) -> bool:
        return self._server.started

    async def start(self) -> None:
        """Serve in the background; returns once the socket is listening."""
        if self._task is not None:
            raise RuntimeError("Server already started")
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                # serve() exited before binding; surface its error
                await self._task
                raise RuntimeError(f"Server failed to start on port {self.port}")
            await asyncio.sleep(0.05)
        log.info("Server running on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None

    def run(self) -> None:
        """Blocking run until interrupted."""
        log.info("Server running on http://%s:%d", self.host, self.port)
        self._server.run()


if __name__ == "__main__":
    ApiServer.from_env().run()
