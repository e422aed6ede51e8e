"""Solibri MCP server with SSE transport.

Run on the Windows machine that has Solibri installed; connect from a remote
MCP client over SSE. Tools drive Solibri headless through autorun XML, or
talk to an already running Solibri through its REST API.

Architecture:
  MCP client --GET /sse (Bearer)-----------------> sessions.py (SDK transport + Server)
             --POST /messages?session_id=<id>----> sessions.py --> tools.py --+--> autorun.py --> Solibri.exe --autorun
                                                                              +--> rest_client.py --> Solibri REST API
"""

import argparse
import dataclasses
import hmac
import json
import logging
import os
import sys

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from autorun import AutorunSupervisor
from config import SERVER_NAME, SERVER_VERSION, Config
from rest_client import SolibriRestClient
from sessions import SessionRegistry, SseSessions, build_server
from tools import build_tools

logger = logging.getLogger("solibri.server")

MESSAGES_PATH = "/messages"


def _check_auth(request: Request, token: str) -> JSONResponse | None:
    """Return an error response unless the request carries the right Bearer token."""
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return JSONResponse({"error": "Missing or invalid authorization header"}, status_code=401)
    if not hmac.compare_digest(header[7:].encode(), token.encode()):
        return JSONResponse({"error": "Invalid token"}, status_code=403)
    return None


class _BearerAuth:
    """ASGI wrapper: the wrapped app only sees requests with the right token."""

    def __init__(self, app, token: str):
        self.app = app
        self.token = token

    async def __call__(self, scope, receive, send) -> None:
        denied = _check_auth(Request(scope), self.token)
        if denied is not None:
            await denied(scope, receive, send)
            return
        await self.app(scope, receive, send)


def create_app(config: Config, registry: SessionRegistry | None = None, tools=None) -> Starlette:
    if tools is None:
        tools = build_tools(AutorunSupervisor(config), SolibriRestClient(config.rest_url), config)
    sessions = SseSessions(build_server(tools), MESSAGES_PATH, registry)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "server": SERVER_NAME, "version": SERVER_VERSION})

    app = Starlette(routes=[
        Route("/health", endpoint=health),
        Route("/sse", endpoint=_BearerAuth(sessions.connect, config.auth_token), methods=["GET"]),
        Route(MESSAGES_PATH, endpoint=_BearerAuth(sessions.post_message, config.auth_token), methods=["POST"]),
    ])
    app.state.registry = sessions.registry
    app.state.tools = tools
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv=None) -> None:
    config = Config.from_env()
    parser = argparse.ArgumentParser(description="Solibri MCP server (SSE transport)")
    parser.add_argument("--host", default=config.host)
    parser.add_argument("--port", type=int, default=config.port)
    args = parser.parse_args(argv)
    config = dataclasses.replace(config, host=args.host, port=args.port)

    logging.basicConfig(
        level=config.log_level.upper(),
        format="[solibri] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    base = f"http://{config.host}:{config.port}"
    logger.info("SSE:    %s/sse", base)
    logger.info("Health: %s/health", base)
    if os.environ.get("SOLIBRI_MCP_TOKEN"):
        logger.info("Auth token: %s...", config.auth_token[:8])
    else:
        logger.warning("SOLIBRI_MCP_TOKEN not set, generated token for this run: %s", config.auth_token)
    logger.info("Client settings: %s", json.dumps({
        "mcpServers": {
            "solibri": {
                "type": "sse",
                "url": f"http://<this-ip>:{config.port}/sse",
                "headers": {"Authorization": "Bearer <token>"},
            },
        },
    }))

    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
