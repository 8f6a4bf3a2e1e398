"""
Loopback receiver for the OAuth redirect.

The authorization server sends the browser to
http://127.0.0.1:<port>/oauth/callback?code=...&state=... and this app
hands the parameters to the TokenLifecycleManager.
"""

from __future__ import annotations

import asyncio
import html
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from switchboard.errors import OAuthError

logger = logging.getLogger(__name__)

_PAGE = """<!doctype html>
<html><head><title>Switchboard</title></head>
<body style="font-family: monospace; padding: 2em">
<h2>{title}</h2><p>{detail}</p>
</body></html>
"""


def _page(title: str, detail: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        _PAGE.format(title=html.escape(title), detail=html.escape(detail)),
        status_code=status_code,
    )


def create_callback_app(manager) -> FastAPI:
    app = FastAPI(title="Switchboard OAuth callback", docs_url=None, redoc_url=None)

    @app.get("/oauth/callback")
    async def oauth_callback(request: Request):
        params = dict(request.query_params)
        try:
            server = await manager.handle_callback(params)
        except OAuthError as e:
            logger.warning("OAuth callback failed: %s", e)
            return _page("Authorization failed", str(e), status_code=400)
        name = server.name if server is not None else "the server"
        logger.info("OAuth callback completed for %s", name)
        return _page("Connected", f"Switchboard is now authorized for {name}. You can close this tab.")

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


async def start_callback_server(manager, host: str = "127.0.0.1", port: int = 8765) -> tuple[uvicorn.Server, asyncio.Task]:
    """Run the receiver in the background of the current event loop."""
    config = uvicorn.Config(create_callback_app(manager), host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    task = asyncio.create_task(server.serve())
    logger.info("OAuth callback listening on http://%s:%d/oauth/callback", host, port)
    return server, task
