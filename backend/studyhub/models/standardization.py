# SPDX-License-Identifier: Apache-2.0
"""Standardization template model."""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Standardization(SQLModel, table=True):
    __tablename__ = "standardizations"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    type: str = Field(index=True)
    field: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    field_id: str
    rules: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    deleted: datetime | None = None
