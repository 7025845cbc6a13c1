# SPDX-License-Identifier: Apache-2.0
"""Per-study field dictionary.

Field entries are per version: frozen entries are never touched, every edit
or deletion writes the study's single live entry for that field id, which the
next freeze attaches to the new version.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Mapping, Sequence

from sqlmodel import Session, col, select

from studyhub.core.exceptions import MalformedInputError, NotFoundError
from studyhub.models import FieldDataType, FieldEntry
from studyhub.services.permission_service import PermissionSet, check_data_entry_valid
from studyhub.services.query_service import latest_ids, pattern_clause, version_clause

logger = logging.getLogger("studyhub")

_INTEGER_RE = re.compile(r"^-?\d+$")
_DECIMAL_RE = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")
_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?)?$"
)
_EDITABLE = ("field_name", "table_name", "data_type", "possible_values", "unit", "comments")


def error_item(code: str, description: str) -> dict[str, str]:
    return {"code": code, "description": description}


def validate_and_generate_field_entry(raw: Mapping[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Sanitised entry values plus human-readable errors. Errors are returned, never raised."""
    errors: list[str] = []
    entry: dict[str, Any] = {
        "field_id": (raw.get("field_id") or "").strip(),
        "field_name": (raw.get("field_name") or "").strip(),
        "table_name": raw.get("table_name"),
        "data_type": raw.get("data_type"),
        "possible_values": None,
        "unit": raw.get("unit"),
        "comments": raw.get("comments"),
    }
    if not entry["field_id"]:
        errors.append("FieldId should not be empty.")
    if not entry["field_name"]:
        errors.append("FieldName should not be empty.")
    if not entry["data_type"]:
        errors.append("DataType should not be empty.")
    elif entry["data_type"] not in FieldDataType.ALL:
        errors.append(f"Data type shouldn't be {entry['data_type']}: use 'int' for integer, "
                      "'dec' for decimal, 'str' for string, 'bool' for boolean, 'date' for datetime, "
                      "'file' for file, 'json' for json, 'cat' for categorical.")
    if entry["data_type"] == FieldDataType.CATEGORICAL:
        values = raw.get("possible_values")
        if not values:
            errors.append(f"{entry['field_id']}-{entry['field_name']}: possible values can't be empty if data type is categorical.")
        else:
            cleaned = []
            for item in values:
                code = item.get("code") if isinstance(item, Mapping) else None
                if code is None or str(code) == "":
                    errors.append(f"{entry['field_id']}-{entry['field_name']}: every possible value needs a code.")
                    continue
                cleaned.append({"code": str(code), "description": str(item.get("description") or "")})
            entry["possible_values"] = cleaned
    return entry, errors


def validate_value(field: FieldEntry, value: str | None) -> str | None:
    """Error message if ``value`` (stored text form) does not fit the field's type."""
    if value is None:
        return None
    data_type = field.data_type
    if data_type == FieldDataType.INTEGER and not _INTEGER_RE.match(value):
        return f"Field {field.field_id}: Cannot parse as integer."
    if data_type == FieldDataType.DECIMAL and not _DECIMAL_RE.match(value):
        return f"Field {field.field_id}: Cannot parse as decimal."
    if data_type == FieldDataType.BOOLEAN and value.lower() not in ("true", "false"):
        return f"Field {field.field_id}: Cannot parse as boolean."
    if data_type == FieldDataType.DATE and not _DATE_RE.match(value):
        return f"Field {field.field_id}: Cannot parse as date. Value for date type must be in ISO format."
    if data_type == FieldDataType.CATEGORICAL:
        codes = [v.get("code") for v in field.possible_values or []]
        if value not in codes:
            return f"Field {field.field_id}: Cannot parse as categorical, value not in value list."
    return None


def value_as_text(value: Any) -> str | None:
    """Stored text form of an uploaded value."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


class FieldCore:
    """Field catalogue reads and live-entry writes."""

    def fields_of_study(
        self,
        session: Session,
        study_id: int,
        versions: Sequence[str | None],
        permission: PermissionSet | None = None,
        metadata_filter=None,
        tombstones_hide: bool = False,
    ) -> list[FieldEntry]:
        """Latest entry per field id within ``versions``, ascending by field id.

        The winner is the entry with the greatest ``date_added`` (ties: the
        last inserted). Deleted entries are left out before ranking, so an
        older definition of a deleted field is still listed. With
        ``tombstones_hide`` deleted entries are ranked too and a winning
        tombstone drops the field; writes use this to refuse deleted fields.
        """
        filters = [
            FieldEntry.study_id == study_id,
            version_clause(col(FieldEntry.data_version), versions),
        ]
        if not tombstones_hide:
            filters.append(col(FieldEntry.date_deleted).is_(None))
        if permission is not None and not permission.is_admin:
            filters.append(pattern_clause(col(FieldEntry.field_id), permission.field_ids))
        if metadata_filter is not None:
            filters.append(metadata_filter)
        winners = latest_ids(
            FieldEntry.id,
            partition_by=(FieldEntry.field_id,),
            order_by=(col(FieldEntry.date_added).desc(), col(FieldEntry.id).desc()),
            filters=filters,
        )
        stmt = (
            select(FieldEntry)
            .where(col(FieldEntry.id).in_(winners), col(FieldEntry.date_deleted).is_(None))
            .order_by(FieldEntry.field_id)
        )
        return list(session.exec(stmt))

    def live_entry(self, session: Session, study_id: int, field_id: str) -> FieldEntry | None:
        return session.exec(
            select(FieldEntry).where(
                FieldEntry.study_id == study_id,
                FieldEntry.field_id == field_id,
                col(FieldEntry.data_version).is_(None),
            )
        ).first()

    def _write_live_entry(self, session: Session, study_id: int, values: Mapping[str, Any], deleted: bool = False) -> FieldEntry:
        entry = self.live_entry(session, study_id, values["field_id"])
        if entry is None:
            entry = FieldEntry(study_id=study_id, field_id=values["field_id"])
        for key in _EDITABLE:
            setattr(entry, key, values.get(key))
        entry.metadata_ = {}
        now = datetime.utcnow()
        entry.date_added = now
        entry.date_deleted = now if deleted else None
        session.add(entry)
        return entry

    def create_new_fields(
        self,
        session: Session,
        study_id: int,
        permission: PermissionSet,
        inputs: Sequence[Mapping[str, Any]],
    ) -> list[dict[str, str]]:
        """Validate and upsert a batch of definitions; failures are reported, the rest are written."""
        errors: list[dict[str, str]] = []
        seen: set[str] = set()
        written = 0
        for raw in inputs:
            field_id = raw.get("field_id") or ""
            if field_id in seen:
                errors.append(error_item("CLIENT_MALFORMED_INPUT", f"Field {field_id}: duplicated in this batch."))
                continue
            seen.add(field_id)
            if not check_data_entry_valid(permission, field_id):
                errors.append(error_item("NO_PERMISSION_ERROR", f"Field {field_id}: no permission to create."))
                continue
            entry, problems = validate_and_generate_field_entry(raw)
            if problems:
                errors.extend(error_item("CLIENT_MALFORMED_INPUT", p) for p in problems)
                continue
            self._write_live_entry(session, study_id, entry)
            written += 1
        logger.info("Study %s: %d field definitions written, %d rejected", study_id, written, len(errors))
        return errors

    def _current(self, session: Session, study_id: int, field_id: str, versions: Sequence[str | None]) -> FieldEntry:
        for entry in self.fields_of_study(session, study_id, [*versions, None], tombstones_hide=True):
            if entry.field_id == field_id:
                return entry
        raise NotFoundError(f"Field {field_id} does not exist.")

    def edit_field(
        self,
        session: Session,
        study_id: int,
        versions: Sequence[str | None],
        field_id: str,
        changes: Mapping[str, Any],
    ) -> FieldEntry:
        """Copy the current definition into the live entry and apply ``changes``."""
        current = self._current(session, study_id, field_id, versions)
        raw = {key: getattr(current, key) for key in _EDITABLE}
        raw.update({k: v for k, v in changes.items() if k in _EDITABLE and v is not None})
        raw["field_id"] = field_id
        entry, problems = validate_and_generate_field_entry(raw)
        if problems:
            raise MalformedInputError("; ".join(problems))
        return self._write_live_entry(session, study_id, entry)

    def delete_field(
        self,
        session: Session,
        study_id: int,
        versions: Sequence[str | None],
        field_id: str,
    ) -> FieldEntry:
        """Tombstone the field in the live entry; frozen definitions stay as they were."""
        current = self._current(session, study_id, field_id, versions)
        values = {key: getattr(current, key) for key in _EDITABLE}
        values["field_id"] = field_id
        return self._write_live_entry(session, study_id, values, deleted=True)
