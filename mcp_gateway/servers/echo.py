"""
Echo upstream — minimal reference upstream.

Use this as a template for building new upstreams, and to exercise the
bridge end to end.

Launch:
    python -m mcp_gateway.servers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":"ping"}' | python -m mcp_gateway.servers.echo
"""

import logging
import sys

from mcp_gateway.upstream_server import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class FailTool(ToolHandler):
    name = "fail"
    description = "Always fails with the given reason."
    parameters = {
        "reason": {"type": "string", "description": "Error message to raise"},
    }

    def handle(self, params: dict) -> dict:
        raise RuntimeError(params.get("reason", "failure requested"))


if __name__ == "__main__":
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(levelname)s: %(message)s")
    server = StdioToolServer()
    server.register(EchoTool())
    server.register(FailTool())
    server.run()
