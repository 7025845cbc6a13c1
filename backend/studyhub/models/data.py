# SPDX-License-Identifier: Apache-2.0
"""Raw data record model (one value per subject, visit, field, version)."""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class DataRecord(SQLModel, table=True):
    __tablename__ = "data_records"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    subject_id: str = Field(index=True)
    visit_id: str = Field(index=True)
    field_id: str = Field(index=True)
    version_id: str | None = Field(default=None, index=True)
    value: str | None = None
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)
    metadata_: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
