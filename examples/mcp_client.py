#!/usr/bin/env python3
import json
import os
import sys
from typing import Any, Dict

import requests


BASE = os.environ.get("FSM_URL", "http://127.0.0.1:7090/mcp")
TOKEN = os.environ.get("FSM_TOKEN", "")
PREFIX = os.environ.get("FSM_TOOL_PREFIX", "filesystem_mcp_")


def post(payload: Dict[str, Any]):
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if TOKEN:
        headers["Authorization"] = f"Bearer {TOKEN}"
    r = requests.post(BASE, headers=headers, data=json.dumps(payload), timeout=60)
    if r.status_code == 401:
        # the challenge names the discovery document to fetch a token from
        print("Unauthorized; WWW-Authenticate:", r.headers.get("WWW-Authenticate"), file=sys.stderr)
    r.raise_for_status()
    return r.json()


def call_tool(msg_id: int, name: str, arguments: Dict[str, Any]):
    return post({
        "jsonrpc": "2.0",
        "id": msg_id,
        "method": "tools/call",
        "params": {"name": PREFIX + name, "arguments": arguments},
    })


def main():
    print("Initialize…")
    init = post({
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {"protocolVersion": "2025-06-18", "capabilities": {}, "clientInfo": {"name": "example", "version": "1"}},
    })
    print(json.dumps(init, indent=2))

    print("\nTools list…")
    tools = post({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    print(", ".join(t["name"] for t in tools["result"]["tools"]))

    workdir = sys.argv[1] if len(sys.argv) > 1 else os.getcwd()

    print(f"\nls {workdir}…")
    print(json.dumps(call_tool(3, "ls", {"path": workdir}), indent=2))

    print("\nexec (background)…")
    started = call_tool(4, "exec", {"command": "echo started; sleep 1; echo done", "workdir": workdir, "background": True})
    print(json.dumps(started, indent=2))
    pid = (started.get("result") or {}).get("structuredContent", {}).get("id")
    if pid:
        print("\nprocess_status…")
        print(json.dumps(call_tool(5, "process_status", {"id": pid}), indent=2))


if __name__ == "__main__":
    try:
        main()
    except requests.HTTPError as e:
        print("HTTP error:", e, file=sys.stderr)
        if e.response is not None:
            print(e.response.text, file=sys.stderr)
        sys.exit(2)
