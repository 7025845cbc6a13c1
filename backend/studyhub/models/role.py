# SPDX-License-Identifier: Apache-2.0
"""Role (permission grant) model."""
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    project_id: int | None = Field(default=None, foreign_key="projects.id", index=True)
    name: str
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    users: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_by: str = ""
    deleted: datetime | None = None
