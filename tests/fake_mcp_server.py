"""
Minimal MCP stdio server used by the subprocess tests.

Behavior is selected with environment variables:
    FAKE_MCP_NAME   server label echoed by the ``search`` tool
    FAKE_MCP_MODE   normal | exit_on_list | no_handshake | bad_handshake | garbage
    FAKE_MCP_TOOLS  comma-separated tool names to advertise (default: echo,search,fail)
"""

import json
import os
import sys

NAME = os.environ.get("FAKE_MCP_NAME", "fake")
MODE = os.environ.get("FAKE_MCP_MODE", "normal")
TOOLS = [t for t in os.environ.get("FAKE_MCP_TOOLS", "echo,search,fail").split(",") if t]


def send(message):
    if MODE == "garbage":
        sys.stdout.write("this is not json\n")
        sys.stdout.write("[1, 2, 3]\n")
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(request_id, payload):
    send({"jsonrpc": "2.0", "id": request_id, "result": payload})


def text(value, is_error=False):
    return {"content": [{"type": "text", "text": value}], "isError": is_error}


def handle(message):
    method = message.get("method")
    request_id = message.get("id")

    if request_id is None:
        return

    if method == "initialize":
        if MODE == "no_handshake":
            return
        if MODE == "bad_handshake":
            result(request_id, "not an object")
            return
        result(request_id, {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": NAME, "version": "0.0.1"},
        })
    elif method == "tools/list":
        if MODE == "exit_on_list":
            sys.exit(1)
        result(request_id, {
            "tools": [
                {
                    "name": tool,
                    "description": f"{tool} tool on {NAME}",
                    "inputSchema": {"type": "object", "properties": {}},
                }
                for tool in TOOLS
            ]
        })
    elif method == "tools/call":
        params = message.get("params") or {}
        tool = params.get("name")
        arguments = params.get("arguments") or {}
        if tool == "echo":
            result(request_id, text(str(arguments.get("text", ""))))
        elif tool == "search":
            result(request_id, text(f"{NAME}:{arguments.get('query', '')}"))
        elif tool == "fail":
            result(request_id, text("tool failed on purpose", is_error=True))
        else:
            send({
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": -32601, "message": f"Unknown tool: {tool}"},
            })
    else:
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32601, "message": f"Method not found: {method}"},
        })


def main():
    sys.stderr.write(f"{NAME} starting in {MODE} mode\n")
    sys.stderr.flush()
    for line in sys.stdin:
        line = line.strip()
        if line:
            handle(json.loads(line))


if __name__ == "__main__":
    main()
