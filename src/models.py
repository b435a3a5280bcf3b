from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credential(SQLModel, table=True):
    """One encrypted secret in the embedded credential store."""

    key: str = Field(primary_key=True)
    value_encrypted: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
