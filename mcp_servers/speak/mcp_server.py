"""MCP server entrypoint for the speak service."""
import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Annotated, Any, AsyncIterator, Dict, List, Optional

from mcp import types
from mcp.server.fastmcp import FastMCP
from mcp.shared.exceptions import McpError
from pydantic import Field

from .engine import ENGINES, build_engine
from .server import MAX_SPEED, MIN_SPEED, SpeakRequest, SpeakService, SpeakValidationError


SERVER_VERSION = "0.1.0"
DESCRIPTION = "MCP server that speaks text aloud using the host operating system's text-to-speech engine."
TRANSPORTS = ("stdio", "sse", "streamable-http")

SPEAK_DESCRIPTION = (
    "A tool to speak text using the system's TTS engine. "
    "Do not provide a voice unless explicitly asked to."
)
STOP_DESCRIPTION = (
    "A tool to stop any ongoing speech. "
    "Does not require to be used unless you are asked to stop speaking."
)

HELP_EPILOG = """\
It provides two tools:
  - speak: Speaks the provided text using the system's TTS engine.
  - stop: Stops any ongoing speech.

Example usage in a MCP host:
{
  "servers": {
    "speak": {
      "type": "stdio",
      "command": "mcp-server-speak",
      "args": []
    }
  }
}

Environment: MCP_TRANSPORT, MCP_HOST, MCP_PORT, MCP_PATH, SPEAK_ENGINE, SPEAK_BIN, SPEAK_LOG_LEVEL
"""

Speed = Annotated[float, Field(ge=MIN_SPEED, le=MAX_SPEED)]

log = logging.getLogger(__name__)

host = os.getenv("MCP_HOST", "127.0.0.1")
path = os.getenv("MCP_PATH", "/mcp").rstrip("/")
sse_path = f"{path}/sse"
message_path = f"{path}/messages/"

# Checked before dispatch; argument errors become JSON-RPC errors, not tool results.
ARGUMENT_VALIDATORS = {"speak": SpeakRequest.from_args}


@asynccontextmanager
async def log_connected(server: FastMCP) -> AsyncIterator[Dict[str, Any]]:
    # Entered once the transport is up and the session starts.
    log.info("Server connected successfully to transport")
    yield {}


def reject_invalid_arguments(server: FastMCP) -> None:
    # FastMCP reports tool exceptions as isError results; an McpError raised
    # here reaches the dispatcher and is sent as a JSON-RPC error object.
    lowlevel = server._mcp_server
    call_tool = lowlevel.request_handlers[types.CallToolRequest]

    async def handler(req: types.CallToolRequest):
        validate = ARGUMENT_VALIDATORS.get(req.params.name)
        if validate is not None:
            try:
                validate(req.params.arguments or {})
            except SpeakValidationError as exc:
                raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message=str(exc))) from exc
        return await call_tool(req)

    lowlevel.request_handlers[types.CallToolRequest] = handler


mcp = FastMCP(
    "Speak",
    instructions=DESCRIPTION,
    host=host,
    sse_path=sse_path,
    message_path=message_path,
    lifespan=log_connected,
)
reject_invalid_arguments(mcp)
service = SpeakService()


@mcp.tool(description=SPEAK_DESCRIPTION)
async def speak(
    text: Annotated[str, Field(description="The text to be spoken")],
    voice: Annotated[
        Optional[str],
        Field(description="Optional voice to use for speech. Varies based on the os."),
    ] = None,
    speed: Annotated[
        Optional[Speed],
        Field(description=f"Speed of speech (defaults to 1.0). Min: {MIN_SPEED}, Max: {MAX_SPEED}"),
    ] = None,
) -> str:
    args = {"text": text, "voice": voice, "speed": speed}
    return await service.handle_speak({k: v for k, v in args.items() if v is not None})


@mcp.tool(description=STOP_DESCRIPTION)
def stop() -> str:
    return service.handle_stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-server-speak",
        description=f"mcp-server-speak v{SERVER_VERSION}\n\n{DESCRIPTION}",
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=os.getenv("MCP_TRANSPORT", "stdio"),
        help="MCP transport to serve on (default: %(default)s)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=os.getenv("MCP_PORT", "8000"),
        help="Bind port for network transports (default: %(default)s)",
    )
    parser.add_argument(
        "--engine",
        choices=["auto", *ENGINES],
        default=None,
        help="Speech engine; defaults to SPEAK_ENGINE or platform detection",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=os.getenv("SPEAK_LOG_LEVEL", "INFO").upper(),
        help="Log level for stderr output (default: %(default)s)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    # stdout carries the protocol; logs go to stderr only.
    logging.basicConfig(
        level=args.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        service.engine = build_engine(args.engine)
    except ValueError as exc:
        parser.error(str(exc))
    mcp.settings.port = args.port

    log.info("Text-to-Speech MCP Server v%s starting...", SERVER_VERSION)
    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
