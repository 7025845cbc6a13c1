# SPDX-License-Identifier: Apache-2.0
"""Field dictionary entry model."""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class FieldDataType:
    INTEGER = "int"
    DECIMAL = "dec"
    STRING = "str"
    BOOLEAN = "bool"
    DATE = "date"
    FILE = "file"
    JSON = "json"
    CATEGORICAL = "cat"

    ALL = (INTEGER, DECIMAL, STRING, BOOLEAN, DATE, FILE, JSON, CATEGORICAL)


class FieldEntry(SQLModel, table=True):
    """Per-version field definition. Frozen entries are never edited; edits write the live entry."""

    __tablename__ = "field_dictionary"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    field_id: str = Field(index=True)
    field_name: str = ""
    table_name: str | None = None
    data_type: str = FieldDataType.STRING
    possible_values: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    unit: str | None = None
    comments: str | None = None
    data_version: str | None = Field(default=None, index=True)
    metadata_: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    date_added: datetime = Field(default_factory=datetime.utcnow)
    date_deleted: datetime | None = None
