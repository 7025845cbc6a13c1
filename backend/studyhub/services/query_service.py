# SPDX-License-Identifier: Apache-2.0
"""Versioned-data query planning.

A data request is compiled into one SELECT over ``data_records``:

1. restrict to the study and the visible data versions,
2. apply the access predicate (none for admins, anchored pattern match for
   live data, OR-of-AND role metadata tags for frozen data) ANDed with any
   explicit metadata conditions,
3. keep the latest upload per (subject, visit, field, version),
4. order so that the most recent visible version comes first.

``merge_records`` then folds rows per (subject, visit) keeping the first
non-null value of each field in that order.
"""
from __future__ import annotations

import operator
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import and_, case, false, func, literal, or_, true
from sqlmodel import col, select

from studyhub.core.exceptions import MalformedInputError
from studyhub.core.patterns import anchored_source
from studyhub.models import DataRecord, FieldEntry, Project
from studyhub.schemas import DataQuery
from studyhub.services.permission_service import PermissionSet

_OPERATORS = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class AccessMode(str, Enum):
    ADMIN = "admin"
    LIVE = "live"
    VERSIONED = "versioned"


def access_mode(permission: PermissionSet, live: bool = False) -> AccessMode:
    if permission.is_admin:
        return AccessMode.ADMIN
    if live and permission.covers_live:
        return AccessMode.LIVE
    return AccessMode.VERSIONED


def version_clause(column, versions: Sequence[str | None]):
    """``column IN versions`` where a None entry stands for live (unversioned) rows."""
    ids = [v for v in versions if v is not None]
    clauses = []
    if ids:
        clauses.append(column.in_(ids))
    if len(ids) != len(versions):
        clauses.append(column.is_(None))
    if not clauses:
        return false()
    return or_(*clauses)


def pattern_clause(column, patterns: Iterable[str]):
    clauses = [column.regexp_match(anchored_source(p)) for p in patterns]
    if not clauses:
        return false()
    return or_(*clauses)


def translate_metadata(column, condition: Mapping[str, Any]):
    """``{key, op, parameter}`` → predicate on one key of a JSON metadata column."""
    key = condition.get("key")
    if not key:
        raise MalformedInputError("Metadata condition needs a key.")
    compare = _OPERATORS.get(condition.get("op", "="))
    if compare is None:
        raise MalformedInputError(f"Unsupported metadata operator {condition.get('op')!r}.")
    parameter = condition.get("parameter")
    element = column[key]
    if isinstance(parameter, bool):
        return compare(element.as_boolean(), parameter)
    if isinstance(parameter, (int, float)):
        return compare(element.as_float(), parameter)
    return compare(element.as_string(), None if parameter is None else str(parameter))


def metadata_predicate(
    column,
    permission: PermissionSet,
    explicit: Sequence[Mapping[str, Any]] | None = None,
):
    """One disjunct per granted role; explicit conditions only ever narrow the result."""
    disjuncts = [
        and_(*[translate_metadata(column, c) for c in sub]) if sub else true()
        for sub in permission.match_objects
    ]
    predicate = or_(*disjuncts) if disjuncts else false()
    if explicit:
        predicate = and_(predicate, *[translate_metadata(column, c) for c in explicit])
    return predicate


def latest_ids(id_column, partition_by, order_by, filters):
    """Ids ranked first within each partition (``row_number() == 1``)."""
    ranked = (
        select(
            id_column.label("id"),
            func.row_number().over(partition_by=partition_by, order_by=order_by).label("row_rank"),
        )
        .where(*filters)
        .subquery()
    )
    return select(ranked.c.id).where(ranked.c.row_rank == 1)


class QueryPlanner:
    """Compiles data requests into SELECT statements over the raw record store."""

    def plan(
        self,
        study_id: int,
        query: DataQuery,
        versions: Sequence[str | None],
        field_entries: Sequence[FieldEntry],
        permission: PermissionSet,
        live: bool = False,
    ):
        mode = access_mode(permission, live)
        field_ids = [f.field_id for f in field_entries]
        if query.data_requested is not None:
            wanted = set(query.data_requested)
            field_ids = [f for f in field_ids if f in wanted]
        filters = [
            DataRecord.study_id == study_id,
            version_clause(col(DataRecord.version_id), versions),
            col(DataRecord.field_id).in_(field_ids),
        ]
        if query.subject_ids is not None:
            filters.append(col(DataRecord.subject_id).in_(query.subject_ids))
        if query.visit_ids is not None:
            filters.append(col(DataRecord.visit_id).in_(query.visit_ids))
        explicit = [m.model_dump() for m in query.metadata] if query.metadata else None
        if mode == AccessMode.LIVE:
            live_grants = permission.live_view()
            filters.extend([
                pattern_clause(col(DataRecord.subject_id), live_grants.subject_ids),
                pattern_clause(col(DataRecord.visit_id), live_grants.visit_ids),
                pattern_clause(col(DataRecord.field_id), live_grants.field_ids),
            ])
        elif mode == AccessMode.VERSIONED:
            filters.append(metadata_predicate(DataRecord.metadata_, permission, explicit))
            explicit = None
        if explicit:
            filters.extend(translate_metadata(DataRecord.metadata_, c) for c in explicit)
        return self.latest_records(filters, versions)

    def latest_records(self, filters: list, versions: Sequence[str | None]):
        """Latest upload per coordinate and version, most recent visible version first."""
        winners = latest_ids(
            DataRecord.id,
            partition_by=(
                DataRecord.subject_id,
                DataRecord.visit_id,
                DataRecord.field_id,
                DataRecord.version_id,
            ),
            order_by=(col(DataRecord.uploaded_at).desc(), col(DataRecord.id).desc()),
            filters=filters,
        )
        positions = {v: i for i, v in enumerate(versions) if v is not None}
        if positions:
            position = case(positions, value=DataRecord.version_id, else_=len(versions))
        else:
            position = literal(0)
        return (
            select(DataRecord)
            .where(col(DataRecord.id).in_(winners))
            .order_by(
                position.desc(),
                DataRecord.subject_id,
                DataRecord.visit_id,
                DataRecord.field_id,
            )
        )


def merge_records(records: Iterable[Any]) -> dict[str, dict[str, dict[str, Any]]]:
    """Group by (subject, visit); per field the first non-null value in iteration order wins."""
    merged: dict[str, dict[str, dict[str, Any]]] = {}
    for record in records:
        row = merged.setdefault(record.subject_id, {}).setdefault(record.visit_id, {})
        if row.get(record.field_id) is None:
            row[record.field_id] = record.value
    return merged


def _coerce(actual: Any, expected: Any) -> tuple[Any, Any]:
    try:
        return float(actual), float(expected)
    except (TypeError, ValueError):
        return str(actual), str(expected)


def _criterion_holds(row: Mapping[str, Any], criterion: Mapping[str, Any]) -> bool:
    actual = row.get(criterion.get("field"))
    op = criterion.get("op", "=")
    expected = criterion.get("value")
    if op == "exists":
        return actual is not None
    if actual is None:
        return False
    if op == "in":
        return str(actual) in {str(v) for v in expected or []}
    compare = _OPERATORS.get(op)
    if compare is None:
        raise MalformedInputError(f"Unsupported cohort operator {op!r}.")
    return compare(*_coerce(actual, expected))


def apply_cohort(
    merged: dict[str, dict[str, dict[str, Any]]],
    cohort: Sequence[Sequence[Mapping[str, Any]]] | None,
) -> dict[str, dict[str, dict[str, Any]]]:
    """Keep (subject, visit) rows satisfying every criterion of at least one group."""
    if not cohort:
        return merged
    result: dict[str, dict[str, dict[str, Any]]] = {}
    for subject_id, visits in merged.items():
        for visit_id, row in visits.items():
            if any(all(_criterion_holds(row, c) for c in group) for group in cohort):
                result.setdefault(subject_id, {})[visit_id] = row
    return result


def redact_for_project(
    merged: dict[str, dict[str, dict[str, Any]]],
    project: Project,
    approved_field_ids: set[str],
) -> dict[str, dict[str, dict[str, Any]]]:
    """Project view: approved fields only, subjects renamed to pseudonyms, unmapped subjects dropped."""
    mapping = project.patient_mapping or {}
    result: dict[str, dict[str, dict[str, Any]]] = {}
    for subject_id, visits in merged.items():
        pseudonym = mapping.get(subject_id)
        if pseudonym is None:
            continue
        for visit_id, row in visits.items():
            kept = {k: v for k, v in row.items() if k in approved_field_ids}
            if kept:
                result.setdefault(pseudonym, {})[visit_id] = kept
    return result
