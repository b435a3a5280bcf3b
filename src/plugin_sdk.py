"""Helpers for writing querybox plugins in Python.

A plugin is an executable that takes one command argument, reads a JSON
request on stdin and writes a JSON response on stdout:

    #!/usr/bin/env python3
    import sys
    from plugin_sdk import DriverPlugin, serve_cli

    class MyDriver(DriverPlugin):
        def info(self): ...
        def exec(self, request): ...

    if __name__ == "__main__":
        sys.exit(serve_cli(MyDriver()))

Exit status is 0 on success, 1 when the handler failed (message on stderr)
and 2 on a usage error.
"""

from __future__ import annotations

import json
import os
import sys
from typing import IO, Optional, Sequence

import config
from protocol import encode_response
from schemas import (
    AuthFormsResponse,
    ConnectionRequest,
    ConnectionTreeResponse,
    ExecRequest,
    ExecResponse,
    PluginInfo,
    TestConnectionResponse,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

USAGE = "usage: <plugin> info|exec|authforms|connection-tree|test-connection"


class DriverPlugin:
    """Base class for driver plugins. Override what the driver supports."""

    def info(self) -> PluginInfo:
        raise NotImplementedError("info")

    def exec(self, request: ExecRequest) -> ExecResponse:
        raise NotImplementedError("exec")

    def auth_forms(self) -> AuthFormsResponse:
        raise NotImplementedError("authforms")

    def connection_tree(self, request: ConnectionRequest) -> ConnectionTreeResponse:
        raise NotImplementedError("connection-tree")

    def test_connection(self, request: ConnectionRequest) -> TestConnectionResponse:
        raise NotImplementedError("test-connection")


def plugin_name(default: str = "") -> str:
    """Registry name the host launched us under."""
    return os.environ.get(config.PLUGIN_NAME_ENV, default)


def _read_request(stdin: IO[str], model):
    text = stdin.read()
    if not text.strip():
        return model()
    return model.model_validate(json.loads(text))


def serve_cli(
    plugin: DriverPlugin,
    argv: Optional[Sequence[str]] = None,
    stdin: Optional[IO[str]] = None,
    stdout: Optional[IO[str]] = None,
    stderr: Optional[IO[str]] = None,
) -> int:
    """Dispatch one command to *plugin* and return the process exit status."""
    argv = sys.argv[1:] if argv is None else list(argv)
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    if len(argv) != 1:
        print(USAGE, file=stderr)
        return EXIT_USAGE
    command = argv[0]

    try:
        if command == "info":
            resp = plugin.info()
        elif command == "exec":
            resp = plugin.exec(_read_request(stdin, ExecRequest))
        elif command == "authforms":
            resp = plugin.auth_forms()
        elif command in ("connection-tree", "tree"):
            resp = plugin.connection_tree(_read_request(stdin, ConnectionRequest))
        elif command == "test-connection":
            resp = plugin.test_connection(_read_request(stdin, ConnectionRequest))
        else:
            print(f"unknown command {command!r}\n{USAGE}", file=stderr)
            return EXIT_USAGE
    except NotImplementedError:
        print(f"{command}: not implemented", file=stderr)
        return EXIT_FAILED
    except Exception as exc:
        print(f"{command}: {exc}", file=stderr)
        return EXIT_FAILED

    stdout.write(encode_response(resp).decode("utf-8"))
    stdout.write("\n")
    stdout.flush()
    return EXIT_OK
