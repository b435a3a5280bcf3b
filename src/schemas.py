"""Wire and host-facing models for the plugin contract.

JSON field names equal the Python attribute names (snake_case). Older plugin
builds that emit camelCase or PascalCase keys are normalized by protocol.py
before they reach these models.
Uses SQLModel (table=False) for consistency with models.py.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import SQLModel

DRIVER_TYPE = 1  # PluginV1.Type.DRIVER
PLUGIN_TYPES = {"TYPE_UNSPECIFIED": 0, "DRIVER": DRIVER_TYPE}

COMMANDS = ("info", "exec", "authforms", "connection-tree", "test-connection")


# ---------------------------------------------------------------------------
# Discovery / info
# ---------------------------------------------------------------------------


class PluginInfo(SQLModel, table=False):
    """Decoded stdout of `<plugin> info`."""

    name: str = ""
    version: str = ""
    description: str = ""
    type: int = 0
    url: str = ""
    author: str = ""
    capabilities: list[str] = []
    tags: list[str] = []
    license: str = ""
    icon_url: str = ""
    contact: str = ""
    meta: dict[str, str] = {}  # wire key "metadata"; that name shadows SQLModel.metadata
    settings: dict[str, str] = {}


class PluginDescriptor(SQLModel, table=False):
    """Registry entry for one discovered executable. `name` is the filename key."""

    name: str
    path: str
    version: str = ""
    description: str = ""
    last_probe_error: str = ""
    discovered_at: datetime
    modified_at: float = 0.0
    display_name: str = ""
    type: int = 0
    url: str = ""
    author: str = ""
    capabilities: list[str] = []
    tags: list[str] = []
    license: str = ""
    icon_url: str = ""
    contact: str = ""
    meta: dict[str, str] = {}  # wire key "metadata"; that name shadows SQLModel.metadata
    settings: dict[str, str] = {}

    def with_info(self, info: PluginInfo) -> "PluginDescriptor":
        """Copy probe metadata onto the descriptor, keeping the filename as the key."""
        fields = info.model_dump()
        fields["display_name"] = fields.pop("name")
        return self.model_copy(update={**fields, "last_probe_error": ""})


# ---------------------------------------------------------------------------
# exec
# ---------------------------------------------------------------------------


class ExecRequest(SQLModel, table=False):
    connection: dict[str, str] = {}
    query: str = ""
    options: dict[str, str] = {}


class Column(SQLModel, table=False):
    name: str
    type: Optional[str] = None


class Row(SQLModel, table=False):
    values: list[str] = []


class SqlResult(SQLModel, table=False):
    columns: list[Column] = []
    rows: list[Row] = []


class DocumentResult(SQLModel, table=False):
    documents: list[dict[str, Any]] = []


class KeyValueResult(SQLModel, table=False):
    data: dict[str, str] = {}


class ExecResult(SQLModel, table=False):
    """Tagged union: exactly one of sql / document / kv is set."""

    sql: Optional[SqlResult] = None
    document: Optional[DocumentResult] = None
    kv: Optional[KeyValueResult] = None

    @property
    def populated(self) -> list[str]:
        return [k for k in ("sql", "document", "kv") if getattr(self, k) is not None]

    @property
    def kind(self) -> Optional[str]:
        populated = self.populated
        return populated[0] if len(populated) == 1 else None

    @classmethod
    def key_value(cls, data: dict[str, str]) -> "ExecResult":
        return cls(kv=KeyValueResult(data=data))


class ExecResponse(SQLModel, table=False):
    """Envelope returned by `exec`. `error` carries a plugin-level (business) error."""

    result: Optional[ExecResult] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# authforms
# ---------------------------------------------------------------------------


class AuthFieldType(str, Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    PASSWORD = "PASSWORD"
    SELECT = "SELECT"
    CHECKBOX = "CHECKBOX"
    FILE_PATH = "FILE_PATH"


class AuthField(SQLModel, table=False):
    type: AuthFieldType = AuthFieldType.TEXT
    name: str
    label: str = ""
    required: bool = False
    placeholder: str = ""
    default_value: str = ""
    options: list[str] = []


class AuthForm(SQLModel, table=False):
    key: str
    display_name: str = ""
    fields: list[AuthField] = []


class AuthFormsResponse(SQLModel, table=False):
    forms: dict[str, AuthForm] = {}


# ---------------------------------------------------------------------------
# connection-tree
# ---------------------------------------------------------------------------


class ConnectionRequest(SQLModel, table=False):
    """stdin of `connection-tree` and `test-connection`."""

    connection: dict[str, str] = {}


class ConnectionTreeAction(SQLModel, table=False):
    type: str  # machine name: select, describe, drop-table, create-table, ...
    title: str = ""
    query: str = ""


class ConnectionTreeNode(SQLModel, table=False):
    key: str
    label: str = ""
    node_type: str = ""
    children: list["ConnectionTreeNode"] = []
    actions: list[ConnectionTreeAction] = []


ConnectionTreeNode.model_rebuild()


class ConnectionTreeResponse(SQLModel, table=False):
    nodes: list[ConnectionTreeNode] = []


# ---------------------------------------------------------------------------
# test-connection
# ---------------------------------------------------------------------------


class TestConnectionResponse(SQLModel, table=False):
    __test__ = False  # not a pytest class

    ok: bool = False
    message: str = ""
