"""Tests for the plugin-side CLI dispatcher."""

import io
import json

from plugin_sdk import EXIT_FAILED, EXIT_OK, EXIT_USAGE, DriverPlugin, plugin_name, serve_cli
from schemas import (
    DRIVER_TYPE,
    ConnectionTreeNode,
    ConnectionTreeResponse,
    ExecResponse,
    ExecResult,
    PluginInfo,
)


class EchoDriver(DriverPlugin):
    def info(self):
        return PluginInfo(name="Echo", version="0.1", type=DRIVER_TYPE)

    def exec(self, request):
        if request.query == "explode":
            raise RuntimeError("driver exploded")
        return ExecResponse(result=ExecResult.key_value({"query": request.query, **request.connection}))

    def connection_tree(self, request):
        return ConnectionTreeResponse(nodes=[ConnectionTreeNode(key="root", label=request.connection.get("db", ""))])


def run(argv, stdin=""):
    out, err = io.StringIO(), io.StringIO()
    code = serve_cli(EchoDriver(), argv, io.StringIO(stdin), out, err)
    return code, out.getvalue(), err.getvalue()


def test_info():
    code, out, _ = run(["info"])
    assert code == EXIT_OK
    assert json.loads(out)["name"] == "Echo"
    assert json.loads(out)["type"] == 1


def test_exec_reads_request_from_stdin():
    code, out, _ = run(["exec"], '{"connection": {"db": "main"}, "query": "SELECT 1"}')
    assert code == EXIT_OK
    assert json.loads(out) == {"result": {"kv": {"data": {"query": "SELECT 1", "db": "main"}}}}


def test_tree_alias():
    code, out, _ = run(["tree"], '{"connection": {"db": "main"}}')
    assert code == EXIT_OK
    assert json.loads(out)["nodes"][0]["label"] == "main"


def test_unimplemented_command_exits_1():
    code, out, err = run(["authforms"])
    assert code == EXIT_FAILED
    assert out == ""
    assert "not implemented" in err


def test_handler_error_goes_to_stderr():
    code, out, err = run(["exec"], '{"query": "explode"}')
    assert code == EXIT_FAILED
    assert out == ""
    assert "driver exploded" in err


def test_usage_errors_exit_2():
    assert run([])[0] == EXIT_USAGE
    assert run(["info", "extra"])[0] == EXIT_USAGE
    code, _, err = run(["drop-everything"])
    assert code == EXIT_USAGE
    assert "unknown command" in err


def test_plugin_name_from_environment(monkeypatch):
    monkeypatch.setenv("QUERYBOX_PLUGIN_NAME", "pg-main")
    assert plugin_name() == "pg-main"
    monkeypatch.delenv("QUERYBOX_PLUGIN_NAME")
    assert plugin_name("fallback") == "fallback"


def test_info_metadata_reaches_the_host():
    from protocol import decode_info

    class TaggedDriver(EchoDriver):
        def info(self):
            return PluginInfo(name="Echo", meta={"homepage": "https://example.org"})

    out = io.StringIO()
    assert serve_cli(TaggedDriver(), ["info"], io.StringIO(), out, io.StringIO()) == EXIT_OK
    assert json.loads(out.getvalue())["metadata"] == {"homepage": "https://example.org"}
    assert decode_info(out.getvalue()).meta == {"homepage": "https://example.org"}
