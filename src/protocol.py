"""JSON codec for the plugin process contract.

Requests are encoded as canonical JSON for the plugin's stdin. Responses are
decoded from stdout. Plugin binaries ship independently of the host and can
lag a protocol revision, so ``decode_exec_response`` runs an ordered chain of
repair strategies and never raises: the last strategy wraps the raw output as
a key/value result under ``RAW_KEY``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlmodel import SQLModel

from errors import DecodeError
from schemas import (
    PLUGIN_TYPES,
    AuthFieldType,
    AuthForm,
    ConnectionTreeNode,
    ConnectionTreeResponse,
    ExecResponse,
    ExecResult,
    PluginInfo,
    TestConnectionResponse,
)

logger = logging.getLogger(__name__)

RAW_KEY = "_"

_AUTH_FIELD_ORDER = list(AuthFieldType)


class _Unrepairable(Exception):
    pass


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_exec_request(
    connection: dict[str, str] | None,
    query: str,
    options: dict[str, str] | None = None,
) -> bytes:
    payload: dict[str, Any] = {"connection": dict(connection or {}), "query": query}
    if options:
        payload["options"] = dict(options)
    return json.dumps(payload).encode("utf-8")


def encode_connection_request(connection: dict[str, str] | None) -> bytes:
    return json.dumps({"connection": dict(connection or {})}).encode("utf-8")


def encode_response(model: SQLModel) -> bytes:
    """Canonical JSON for a response model (used by plugin_sdk)."""
    data = model.model_dump(mode="json", exclude_none=True)
    if isinstance(model, PluginInfo) and "meta" in data:
        data["metadata"] = data.pop("meta")
    return json.dumps(data).encode("utf-8")


def format_sql_value(value: Any) -> str:
    """Render a driver cell value as display text.

    None becomes "", bytes become text when valid UTF-8 and 0x-prefixed hex
    otherwise.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        b = bytes(value)
        try:
            return b.decode("utf-8")
        except UnicodeDecodeError:
            return "0x" + b.hex()
    return str(value)


# ---------------------------------------------------------------------------
# Key normalization
# ---------------------------------------------------------------------------


def _canon(key: Any) -> str:
    return str(key).replace("_", "").replace("-", "").lower()


def _rename(obj: dict, aliases: dict[str, str]) -> dict[str, Any]:
    """Map *obj*'s keys onto canonical names; unknown keys are dropped, first spelling wins."""
    out: dict[str, Any] = {}
    for key, value in obj.items():
        target = aliases.get(_canon(key))
        if target is not None and target not in out:
            out[target] = value
    return out


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


def _text(value: Any) -> str:
    return "" if value is None else _cell(value)


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [_cell(v) for v in value]


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): _cell(v) for k, v in value.items()}


def _loads(raw: bytes | str) -> Any:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    if not text.strip():
        raise DecodeError("empty plugin output")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"invalid json: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("plugin output is nested too deeply") from exc


def _loads_object(raw: bytes | str, what: str) -> dict:
    data = _loads(raw)
    if not isinstance(data, dict):
        raise DecodeError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


# ---------------------------------------------------------------------------
# exec
# ---------------------------------------------------------------------------

_ENVELOPE = {"result": "result", "error": "error"}
_RESULT = {
    "sql": "sql",
    "sqlresult": "sql",
    "document": "document",
    "documentresult": "document",
    "kv": "kv",
    "keyvalue": "kv",
    "keyvalueresult": "kv",
    "kvresult": "kv",
}
_SQL = {"columns": "columns", "cols": "columns", "rows": "rows"}
_COLUMN = {"name": "name", "type": "type", "declaredtype": "type", "datatype": "type"}
_ROW = {"values": "values", "cells": "values"}
_DOCUMENT = {"documents": "documents", "docs": "documents"}
_KV = {"data": "data"}


def _normalize_sql(value: Any) -> dict:
    if not isinstance(value, dict):
        raise _Unrepairable("sql payload is not an object")
    fields = _rename(value, _SQL)
    out: dict[str, Any] = {}
    if "columns" in fields:
        columns = fields["columns"] or []
        if not isinstance(columns, list):
            raise _Unrepairable("columns is not a list")
        out["columns"] = []
        for col in columns:
            if isinstance(col, str):
                out["columns"].append({"name": col})
            elif isinstance(col, dict):
                c = _rename(col, _COLUMN)
                entry: dict[str, Any] = {"name": _text(c.get("name"))}
                if "type" in c:
                    entry["type"] = None if c["type"] is None else _cell(c["type"])
                out["columns"].append(entry)
            else:
                raise _Unrepairable("column entry has unknown shape")
    if "rows" in fields:
        rows = fields["rows"] or []
        if not isinstance(rows, list):
            raise _Unrepairable("rows is not a list")
        out["rows"] = []
        for row in rows:
            if isinstance(row, list):
                out["rows"].append({"values": [_cell(v) for v in row]})
            elif isinstance(row, dict):
                values = _rename(row, _ROW).get("values") or []
                if not isinstance(values, list):
                    raise _Unrepairable("row values is not a list")
                out["rows"].append({"values": [_cell(v) for v in values]})
            else:
                raise _Unrepairable("row entry has unknown shape")
    return out


def _normalize_document(value: Any) -> dict:
    if isinstance(value, list):
        docs = value
    elif isinstance(value, dict):
        docs = _rename(value, _DOCUMENT).get("documents") or []
    else:
        raise _Unrepairable("document payload has unknown shape")
    if isinstance(docs, dict):
        docs = [docs]
    if not isinstance(docs, list) or not all(isinstance(d, dict) for d in docs):
        raise _Unrepairable("documents must be objects")
    return {"documents": docs}


def _normalize_kv(value: Any) -> dict:
    if not isinstance(value, dict):
        raise _Unrepairable("kv payload is not an object")
    fields = _rename(value, _KV)
    data = fields.get("data")
    if "data" in fields and (data is None or isinstance(data, dict)):
        # Siblings of `data` are extra entries; `data` wins on a clash.
        extra = {k: v for k, v in value.items() if _canon(k) != "data"}
        data = {**extra, **(data or {})}
    else:
        data = value
    if not isinstance(data, dict):
        raise _Unrepairable("kv data is not an object")
    return {"data": {str(k): _cell(v) for k, v in data.items()}}


def _normalize_result(value: Any) -> dict:
    if not isinstance(value, dict):
        raise _Unrepairable("result is not an object")
    out: dict[str, Any] = {}
    for kind, payload in _rename(value, _RESULT).items():
        if kind == "sql":
            out["sql"] = _normalize_sql(payload if payload is not None else {})
        elif kind == "document":
            out["document"] = _normalize_document(payload if payload is not None else {})
        else:
            out["kv"] = _normalize_kv(payload if payload is not None else {})
    return out


def _normalize_exec(data: Any) -> dict:
    """Rewrite a loosely shaped exec response into the canonical envelope."""
    if not isinstance(data, dict):
        raise _Unrepairable("response is not an object")
    env = _rename(data, _ENVELOPE)
    if "result" not in env:
        # Payload emitted without the envelope.
        if _rename(data, _RESULT):
            env["result"] = data
        elif _rename(data, _SQL):
            env["result"] = {"sql": data}
        elif _rename(data, _DOCUMENT):
            env["result"] = {"document": data}
        elif _rename(data, _KV):
            env["result"] = {"kv": data}
    out: dict[str, Any] = {}
    if "result" in env:
        out["result"] = None if env["result"] is None else _normalize_result(env["result"])
    if "error" in env:
        err = env["error"]
        out["error"] = err if err is None or isinstance(err, str) else _cell(err)
    return out


def _validated(data: dict) -> Optional[ExecResponse]:
    try:
        resp = ExecResponse.model_validate(data)
    except ValidationError:
        return None
    if resp.error:
        return resp
    if resp.result is None:
        # `{}` or `{"result": null}`: nothing to show
        return ExecResponse(result=ExecResult.key_value({}))
    if len(resp.result.populated) != 1:
        return None
    return resp


def _decode_canonical(data: Any, text: str) -> Optional[ExecResponse]:
    try:
        if _normalize_exec(data) != data:
            return None
    except _Unrepairable:
        return None
    return _validated(data)


def _decode_bare_string(data: Any, text: str) -> Optional[ExecResponse]:
    if isinstance(data, str):
        return ExecResponse(result=ExecResult.key_value({RAW_KEY: data}))
    if isinstance(data, dict):
        env = _rename(data, _ENVELOPE)
        if isinstance(env.get("result"), str):
            err = env.get("error")
            return ExecResponse(
                result=ExecResult.key_value({RAW_KEY: env["result"]}),
                error=err if isinstance(err, str) and err else None,
            )
    return None


def _decode_normalized(data: Any, text: str) -> Optional[ExecResponse]:
    try:
        normalized = _normalize_exec(data)
    except _Unrepairable as exc:
        logger.debug("Exec response not repairable by normalization: %s", exc)
        return None
    if not normalized:
        return None
    return _validated(normalized)


def _wrap_raw(data: Any, text: str) -> ExecResponse:
    return ExecResponse(result=ExecResult.key_value({RAW_KEY: text}))


_NOT_JSON = object()

# Tried in order; the first non-None answer wins. _wrap_raw always answers.
EXEC_STRATEGIES: list[tuple[str, Callable[[Any, str], Optional[ExecResponse]]]] = [
    ("canonical", _decode_canonical),
    ("bare-string", _decode_bare_string),
    ("normalized", _decode_normalized),
    ("raw", _wrap_raw),
]


def decode_exec_response(raw: bytes | str) -> ExecResponse:
    """Decode `exec` stdout into an ExecResponse. Never raises.

    Without an error, the returned result has exactly one populated variant.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    if not text.strip():
        return ExecResponse(result=ExecResult.key_value({}))
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        data = _NOT_JSON
    for name, strategy in EXEC_STRATEGIES:
        if data is _NOT_JSON and name != "raw":
            continue
        try:
            resp = strategy(data, text)
        except RecursionError:
            logger.warning("Exec response too deeply nested for %s strategy", name)
            continue
        if resp is not None:
            if name != "canonical":
                logger.info("Decoded exec response via %s strategy", name)
            return resp
    raise AssertionError("raw strategy always succeeds")  # pragma: no cover


def decode_exec_envelope(raw: bytes | str) -> Optional[ExecResponse]:
    """Strict decode used when the plugin exited non-zero.

    Returns the response only if stdout is a well-formed envelope carrying an
    error; otherwise None, and the caller treats the exit as a crash.
    """
    try:
        data = _loads(raw)
        resp = _decode_canonical(data, "") or _decode_normalized(data, "")
    except (DecodeError, RecursionError):
        return None
    if resp is None or not resp.error:
        return None
    return resp


# ---------------------------------------------------------------------------
# info
# ---------------------------------------------------------------------------

_INFO = {
    "name": "name",
    "version": "version",
    "description": "description",
    "type": "type",
    "url": "url",
    "author": "author",
    "capabilities": "capabilities",
    "tags": "tags",
    "license": "license",
    "iconurl": "icon_url",
    "contact": "contact",
    "metadata": "meta",
    "meta": "meta",
    "settings": "settings",
}
_INFO_TEXT = ("name", "version", "description", "url", "author", "license", "icon_url", "contact")


def _plugin_type(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        name = value.strip().upper()
        if name.isdigit():
            return int(name)
        return PLUGIN_TYPES.get(name, PLUGIN_TYPES.get(name.removeprefix("TYPE_"), 0))
    return 0


def decode_info(raw: bytes | str) -> PluginInfo:
    data = _loads_object(raw, "info")
    fields = _rename(data, _INFO)
    out: dict[str, Any] = {k: _text(fields.get(k)) for k in _INFO_TEXT if k in fields}
    out["type"] = _plugin_type(fields.get("type"))
    out["capabilities"] = _string_list(fields.get("capabilities"))
    out["tags"] = _string_list(fields.get("tags"))
    out["meta"] = _string_map(fields.get("meta"))
    out["settings"] = _string_map(fields.get("settings"))
    try:
        return PluginInfo.model_validate(out)
    except ValidationError as exc:
        raise DecodeError(f"invalid info response: {exc}") from exc


# ---------------------------------------------------------------------------
# authforms
# ---------------------------------------------------------------------------

_FORM = {"key": "key", "name": "display_name", "displayname": "display_name", "fields": "fields"}
_FIELD = {
    "type": "type",
    "name": "name",
    "label": "label",
    "required": "required",
    "placeholder": "placeholder",
    "value": "default_value",
    "defaultvalue": "default_value",
    "default": "default_value",
    "options": "options",
}


def _field_type(value: Any) -> AuthFieldType:
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(_AUTH_FIELD_ORDER):
            return _AUTH_FIELD_ORDER[value]
    elif isinstance(value, str):
        name = value.strip().upper().replace("-", "_")
        if name == "FILEPATH":
            name = "FILE_PATH"
        if name in AuthFieldType.__members__:
            return AuthFieldType[name]
    logger.warning("Unknown auth field type %r; rendering as TEXT", value)
    return AuthFieldType.TEXT


def _option(value: Any) -> str:
    if isinstance(value, dict):
        return _text(value.get("value", value.get("label")))
    return _cell(value)


def _auth_form(key: str, value: Any) -> AuthForm:
    if not isinstance(value, dict):
        raise DecodeError(f"auth form {key!r} is not an object")
    form = _rename(value, _FORM)
    fields = []
    for raw_field in form.get("fields") or []:
        if not isinstance(raw_field, dict):
            raise DecodeError(f"auth form {key!r} has a malformed field")
        f = _rename(raw_field, _FIELD)
        fields.append(
            {
                "type": _field_type(f.get("type", "TEXT")),
                "name": _text(f.get("name")),
                "label": _text(f.get("label")),
                "required": bool(f.get("required", False)),
                "placeholder": _text(f.get("placeholder")),
                "default_value": _text(f.get("default_value")),
                "options": [_option(o) for o in (f.get("options") or [])],
            }
        )
    try:
        return AuthForm.model_validate(
            {
                "key": _text(form.get("key")) or key,
                "display_name": _text(form.get("display_name")) or key,
                "fields": fields,
            }
        )
    except ValidationError as exc:
        raise DecodeError(f"invalid auth form {key!r}: {exc}") from exc


def decode_auth_forms(raw: bytes | str) -> dict[str, AuthForm]:
    """Decode `authforms` stdout into {form key: AuthForm}. Empty output means no forms."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    if not text.strip():
        return {}
    data = _loads_object(text, "authforms")
    forms = _rename(data, {"forms": "forms"}).get("forms") or {}
    if isinstance(forms, list):
        forms = {_text(f.get("key")) if isinstance(f, dict) else "": f for f in forms}
    if not isinstance(forms, dict):
        raise DecodeError("authforms: forms must be an object")
    return {key: _auth_form(key, value) for key, value in forms.items() if value is not None}


# ---------------------------------------------------------------------------
# connection-tree
# ---------------------------------------------------------------------------

_NODE = {
    "key": "key",
    "label": "label",
    "nodetype": "node_type",
    "type": "node_type",
    "children": "children",
    "actions": "actions",
}
_ACTION = {"type": "type", "title": "title", "query": "query"}


def _node_type(value: Any) -> str:
    text = _text(value)
    if text.upper().startswith("NODE_TYPE_"):
        return text[len("NODE_TYPE_"):].lower()
    return text


def _tree_nodes(items: Any) -> list[dict]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise DecodeError("tree nodes must be a list")
    nodes: list[dict] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            raise DecodeError("tree node is not an object")
        n = _rename(item, _NODE)
        key = _text(n.get("key")) or _text(n.get("label"))
        if not key:
            logger.warning("Dropping connection tree node without key or label")
            continue
        if key in seen:
            logger.warning("Dropping duplicate sibling key %r in connection tree", key)
            continue
        seen.add(key)
        actions = []
        for a in n.get("actions") or []:
            if not isinstance(a, dict):
                raise DecodeError("tree action is not an object")
            action = _rename(a, _ACTION)
            actions.append({k: _text(action.get(k)) for k in ("type", "title", "query")})
        nodes.append(
            {
                "key": key,
                "label": _text(n.get("label")) or key,
                "node_type": _node_type(n.get("node_type")),
                "children": _tree_nodes(n.get("children")),
                "actions": actions,
            }
        )
    return nodes


def decode_connection_tree(raw: bytes | str) -> ConnectionTreeResponse:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    if not text.strip():
        return ConnectionTreeResponse()
    data = _loads(text)
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = _rename(data, {"nodes": "nodes"}).get("nodes")
    else:
        raise DecodeError("connection-tree: expected an object")
    try:
        return ConnectionTreeResponse(nodes=[ConnectionTreeNode.model_validate(n) for n in _tree_nodes(items)])
    except ValidationError as exc:
        raise DecodeError(f"invalid connection tree: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("connection tree is nested too deeply") from exc


# ---------------------------------------------------------------------------
# test-connection
# ---------------------------------------------------------------------------


def decode_test_connection(raw: bytes | str) -> TestConnectionResponse:
    data = _loads_object(raw, "test-connection")
    fields = _rename(data, {"ok": "ok", "success": "ok", "message": "message"})
    return TestConnectionResponse(ok=fields.get("ok") is True, message=_text(fields.get("message")))
