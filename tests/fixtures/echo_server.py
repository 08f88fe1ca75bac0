"""Minimal line-JSON tool server used by the supervisor tests.

Usage: python echo_server.py [mode]

Modes:
    ok              answer list_tools and call_tool normally
    noisy           print junk and a stale response before each answer
    bad-handshake   answer list_tools with a malformed listing
    hang            never answer anything
    crash           exit with code 3 after the handshake's first call_tool
    die-early       write to stderr and exit before answering
    stubborn        ignore SIGTERM and keep running after stdin closes
"""
import json
import signal
import sys
import time

MODE = sys.argv[1] if len(sys.argv) > 1 else "ok"

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the given text back",
        "parameters": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "fail",
        "description": "Always reports an error",
        "parameters": {"type": "object", "properties": {}},
    },
]


def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


def handle(request):
    method = request.get("method")
    params = request.get("params") or {}
    if method == "list_tools":
        if MODE == "bad-handshake":
            return {"tools": [{"name": "has space"}]}
        return {"tools": TOOLS}
    if method == "call_tool":
        if MODE == "crash":
            sys.exit(3)
        name = params.get("name")
        args = params.get("arguments") or {}
        if name == "echo":
            return {"content": [{"type": "text", "text": args.get("text", "")}]}
        if name == "fail":
            return {"is_error": True, "content": [{"type": "text", "text": "boom"}]}
        raise KeyError(name)
    raise KeyError(method)


def main():
    if MODE == "die-early":
        sys.stderr.write("fatal: missing credentials\n")
        sys.stderr.flush()
        sys.exit(2)
    if MODE == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        if MODE == "hang":
            time.sleep(3600)
            continue
        if MODE == "noisy":
            sys.stdout.write("starting up...\n")
            send({"id": -1, "result": "stale"})
        try:
            send({"id": request["id"], "result": handle(request)})
        except KeyError as exc:
            send({"id": request["id"], "error": f"unknown: {exc}"})
    if MODE == "stubborn":
        time.sleep(3600)


if __name__ == "__main__":
    main()
