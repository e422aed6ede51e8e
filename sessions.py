"""MCP sessions over SSE.

JSON-RPC framing, the initialize handshake and request ids belong to the MCP
SDK: a lowlevel Server answers from the fixed tool table and an
SseServerTransport carries it over GET /sse and POST /messages. This module
binds the two together and keeps the registry of open sessions, keyed by the
id the transport hands out in its `endpoint` event:

  client --GET /sse--------------> SseSessions.connect --> registry.open(id)
         <--event: endpoint /messages?session_id=<id>
         --POST /messages?session_id=<id>--> SseSessions.post_message --> Server
         <--event: message {jsonrpc response}--
"""

import logging
import re
import time

from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.sse import SseServerTransport
from mcp.shared.exceptions import MCPError

from config import SERVER_NAME, SERVER_VERSION

logger = logging.getLogger("solibri.sessions")

# The id inside the endpoint event the transport sends first on every stream.
_ENDPOINT_SESSION_ID = re.compile(rb"session_id=([0-9a-f]{32})")


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

def build_server(tools, name: str = SERVER_NAME, version: str = SERVER_VERSION) -> Server:
    """A lowlevel MCP server answering tools/list and tools/call from `tools`."""

    async def list_tools(ctx, params) -> types.ListToolsResult:
        return types.ListToolsResult(tools=[
            types.Tool(name=tool.name, description=tool.description, input_schema=tool.input_schema())
            for tool in tools.values()
        ])

    async def call_tool(ctx, params: types.CallToolRequestParams) -> types.CallToolResult:
        tool = tools.get(params.name)
        if tool is None:
            raise MCPError(code=types.METHOD_NOT_FOUND, message=f"Unknown tool: {params.name}")
        return await tool.invoke(params.arguments or {})

    async def list_resources(ctx, params) -> types.ListResourcesResult:
        return types.ListResourcesResult(resources=[])

    async def list_resource_templates(ctx, params) -> types.ListResourceTemplatesResult:
        return types.ListResourceTemplatesResult(resource_templates=[])

    async def list_prompts(ctx, params) -> types.ListPromptsResult:
        return types.ListPromptsResult(prompts=[])

    return Server(
        name,
        version=version,
        on_list_tools=list_tools,
        on_call_tool=call_tool,
        on_list_resources=list_resources,
        on_list_resource_templates=list_resource_templates,
        on_list_prompts=list_prompts,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class Session:
    """One open SSE stream."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.opened_at = time.monotonic()


class SessionRegistry:
    """Open sessions keyed by the transport's id. Only connect/disconnect mutate it."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def open(self, session_id: str) -> Session:
        session = Session(session_id)
        self._sessions[session_id] = session
        logger.info("session %s opened (%d active)", session_id, len(self._sessions))
        return session

    def close(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.info("session %s closed (%d active)", session_id, len(self._sessions))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id) -> bool:
        return session_id in self._sessions


class SseSessions:
    """The ASGI apps behind GET /sse and POST /messages, sharing one transport.

    Disconnecting ends the stream and the SDK cancels the session's pending
    requests. Autorun jobs those requests started keep running to completion
    (see AutorunSupervisor).
    """

    def __init__(self, server: Server, messages_path: str, registry: SessionRegistry | None = None):
        self.server = server
        self.transport = SseServerTransport(messages_path)
        self.registry = registry if registry is not None else SessionRegistry()

    async def connect(self, scope, receive, send) -> None:
        session_id = None

        async def announce(message) -> None:
            nonlocal session_id
            if session_id is None and message["type"] == "http.response.body":
                found = _ENDPOINT_SESSION_ID.search(message.get("body", b""))
                if found:
                    session_id = found.group(1).decode()
                    self.registry.open(session_id)
            await send(message)

        try:
            async with self.transport.connect_sse(scope, receive, announce) as (read_stream, write_stream):
                await self.server.run(read_stream, write_stream, self.server.create_initialization_options())
        finally:
            if session_id is not None:
                self.registry.close(session_id)

    async def post_message(self, scope, receive, send) -> None:
        # A session can close while the body is still being read; unknown
        # and closed sessions are both the client's error.
        async def reply(message) -> None:
            if message["type"] == "http.response.start" and message["status"] == 404:
                logger.warning("message for a session that is not open: %s", scope.get("query_string", b"").decode())
                message = {**message, "status": 400}
            await send(message)

        await self.transport.handle_post_message(scope, receive, reply)
