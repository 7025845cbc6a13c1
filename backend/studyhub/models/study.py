# SPDX-License-Identifier: Apache-2.0
"""Study, DataVersion, Project models."""
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class StudyType:
    SENSOR = "SENSOR"
    CLINICAL = "CLINICAL"
    ANY = "ANY"

    ALL = (SENSOR, CLINICAL, ANY)


class Study(SQLModel, table=True):
    __tablename__ = "studies"
    id: int | None = Field(default=None, primary_key=True)
    name: str
    description: str = ""
    type: str = StudyType.ANY
    created_by: str = ""
    current_data_version: int = -1
    last_modified: datetime = Field(default_factory=datetime.utcnow)
    deleted: datetime | None = None


class DataVersion(SQLModel, table=True):
    """One frozen snapshot boundary. Rows are only ever appended."""

    __tablename__ = "data_versions"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    position: int = Field(index=True)
    content_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str
    tag: str | None = None
    update_date: datetime = Field(default_factory=datetime.utcnow)
    job_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    extracted_from: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    field_trees: list[str] = Field(default_factory=list, sa_column=Column(JSON))


class Project(SQLModel, table=True):
    __tablename__ = "projects"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    name: str
    created_by: str = ""
    patient_mapping: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    approved_fields: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    approved_files: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    last_modified: datetime = Field(default_factory=datetime.utcnow)
    deleted: datetime | None = None
