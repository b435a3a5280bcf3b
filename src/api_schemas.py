"""Request bodies for the querybox REST API. Responses reuse the models in schemas.py."""

from typing import Optional

from sqlmodel import SQLModel


class ExecBody(SQLModel):
    """Body for exec: connection map, query text and optional driver options."""

    connection: dict[str, str] = {}
    query: str
    options: Optional[dict[str, str]] = None


class ConnectionBody(SQLModel):
    connection: dict[str, str] = {}


class TreeActionBody(SQLModel):
    connection: dict[str, str] = {}
    action_query: str
    options: Optional[dict[str, str]] = None


class CredentialBody(SQLModel):
    """Secret to store. Never echoed back by any route."""

    secret: str
