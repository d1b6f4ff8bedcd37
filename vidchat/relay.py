"""
Local relay — forwards provider calls for clients that cannot reach the
vendor APIs directly (browser CORS, corporate egress).

    POST /proxy   {url, data, headers, stream} → same status and body as upstream
    GET  /status  liveness

Streaming responses are passed through chunk by chunk, never buffered.
Run with `vidchat relay` (uvicorn, app factory).
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from vidchat import __version__
from vidchat.config import get_config

logger = logging.getLogger(__name__)

# Never forwarded from the envelope; httpx sets these for the upstream request
_DROPPED_HEADERS = {"host", "content-length", "connection", "transfer-encoding"}


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def host_allowed(url: str, allowed_hosts: list[str]) -> bool:
    """Empty allow-list means any host."""
    if not allowed_hosts:
        return True
    return urlparse(url).hostname in allowed_hosts


def create_app(
    cfg: dict | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    cfg = cfg or get_config()
    relay_cfg = cfg.get("relay", {})
    allowed_hosts = list(relay_cfg.get("allowed_hosts") or [])
    timeout = relay_cfg.get("timeout", 120)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Relay up (timeout=%ss, allowed hosts: %s)",
            timeout, ", ".join(allowed_hosts) or "any",
        )
        yield
        logger.info("Relay shutting down")

    app = FastAPI(
        title="vidchat relay",
        description="Forwards chat-completion calls to the video chat providers.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/status")
    async def status():
        return JSONResponse({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.post("/proxy")
    async def proxy(request: Request):
        try:
            envelope = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid JSON"}, status_code=400)
        if not isinstance(envelope, dict):
            return JSONResponse({"error": "envelope must be an object"}, status_code=400)

        url = envelope.get("url")
        data = envelope.get("data")
        if not url or data is None:
            return JSONResponse({"error": "Missing url or data"}, status_code=400)
        if not host_allowed(url, allowed_hosts):
            logger.warning("Relay refused target host: %s", urlparse(url).hostname)
            return JSONResponse({"error": "Target host not allowed"}, status_code=403)

        headers = {
            k: v for k, v in (envelope.get("headers") or {}).items()
            if k.lower() not in _DROPPED_HEADERS
        }
        stream = bool(envelope.get("stream"))

        client = httpx.AsyncClient(timeout=timeout, transport=transport)
        try:
            upstream = await client.send(
                client.build_request("POST", url, json=data, headers=headers),
                stream=stream,
            )
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning("Relay upstream failure for %s: %s", url, e)
            return JSONResponse({"error": f"Upstream request failed: {e}"}, status_code=502)

        logger.info("Relay %s → HTTP %d (stream=%s)", url, upstream.status_code, stream)

        if not stream:
            await client.aclose()
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                media_type=upstream.headers.get("content-type", "application/json"),
            )

        async def passthrough():
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            finally:
                await upstream.aclose()
                await client.aclose()

        return StreamingResponse(
            passthrough(),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/event-stream"),
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app
