# SPDX-License-Identifier: Apache-2.0
"""Output formatting of merged data rows.

``raw`` returns the merged ``{subject: {visit: {field: value}}}`` mapping,
``grouped`` a list of flat rows, ``standardized-<type>`` evaluates the study's
templates of that type. A template names a source field, an output path and a
list of rules, each rule producing one entry of the output clip:

- ``value``: the rule's literal parameter
- ``data``: the row's value for the parameter field (default: the template's field)
- ``fieldDef``: an attribute of the field definition, e.g. ``unit``
- ``reserved``: ``subjectId``, ``visitId`` or ``studyId``
- ``inc``: a running counter per output path, starting at 1
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Mapping, Sequence

from sqlmodel import Session, col, select

from studyhub.core.exceptions import MalformedInputError, NoPermissionError, NotFoundError
from studyhub.database import session_scope
from studyhub.models import FieldEntry, Standardization, Study
from studyhub.schemas import Requester
from studyhub.services.permission_service import AtomicOperation, PermissionCore, PermissionScope

logger = logging.getLogger("studyhub")

RAW = "raw"
GROUPED = "grouped"
STANDARDIZED_PREFIX = "standardized-"
RULE_SOURCES = ("value", "data", "fieldDef", "reserved", "inc")

_RESERVED = {
    "subjectId": "subject_id",
    "m_subjectId": "subject_id",
    "visitId": "visit_id",
    "m_visitId": "visit_id",
    "studyId": "study_id",
    "m_studyId": "study_id",
}


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def standardization_type(fmt: str) -> str | None:
    """``standardized-<type>`` → ``<type>``; None for the built-in formats."""
    if fmt in (RAW, GROUPED):
        return None
    if fmt.startswith(STANDARDIZED_PREFIX) and len(fmt) > len(STANDARDIZED_PREFIX):
        return fmt[len(STANDARDIZED_PREFIX):]
    raise MalformedInputError(f"Unknown data format {fmt!r}.")


def validate_rules(rules: Sequence[Mapping[str, Any]]) -> None:
    for rule in rules:
        if not rule.get("entry"):
            raise MalformedInputError("Every standardization rule needs an entry name.")
        if rule.get("source") not in RULE_SOURCES:
            raise MalformedInputError(f"Unknown rule source {rule.get('source')!r}.")
        if rule["source"] == "reserved" and rule.get("parameter") not in _RESERVED:
            raise MalformedInputError(f"Unknown reserved parameter {rule.get('parameter')!r}.")


def grouped_rows(merged: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> list[dict[str, Any]]:
    rows = []
    for subject_id in sorted(merged):
        for visit_id in sorted(merged[subject_id]):
            rows.append({"subject_id": subject_id, "visit_id": visit_id, **merged[subject_id][visit_id]})
    return rows


class Standardizer:
    def __init__(self, engine, permission_core: PermissionCore):
        self.engine = engine
        self.permission_core = permission_core

    def templates(self, session: Session, study_id: int, type_: str) -> list[Standardization]:
        return list(
            session.exec(
                select(Standardization)
                .where(
                    Standardization.study_id == study_id,
                    Standardization.type == type_,
                    col(Standardization.deleted).is_(None),
                )
                .order_by(Standardization.id)
            )
        )

    def format(
        self,
        session: Session,
        study: Study,
        field_entries: Sequence[FieldEntry],
        merged: dict[str, dict[str, dict[str, Any]]],
        fmt: str = RAW,
    ) -> Any:
        type_ = standardization_type(fmt)
        if fmt == GROUPED:
            return grouped_rows(merged)
        if type_ is None:
            return merged
        return self.standardize(study, field_entries, merged, self.templates(session, study.id, type_))

    def standardize(
        self,
        study: Study,
        field_entries: Sequence[FieldEntry],
        merged: Mapping[str, Mapping[str, Mapping[str, Any]]],
        templates: Sequence[Standardization],
    ) -> dict[str, list[dict[str, Any]]]:
        """Evaluate templates over every merged row carrying the template's field."""
        fields = {f.field_id: f for f in field_entries}
        output: dict[str, list[dict[str, Any]]] = {}
        counters: dict[str, int] = {}
        for template in templates:
            field = fields.get(template.field_id)
            if field is None:
                continue
            path = ".".join(template.field)
            for row in grouped_rows(merged):
                if row.get(template.field_id) is None:
                    continue
                clip = {}
                for rule in template.rules:
                    clip[rule["entry"]] = self._evaluate(rule, row, field, study, path, counters)
                output.setdefault(path, []).append(clip)
        return output

    def _evaluate(self, rule, row, field, study, path, counters) -> Any:
        source = rule.get("source")
        parameter = rule.get("parameter")
        if source == "value":
            return parameter
        if source == "data":
            return row.get(parameter or field.field_id)
        if source == "fieldDef":
            return getattr(field, _snake(parameter or "fieldName"), None)
        if source == "reserved":
            attribute = _RESERVED[parameter]
            return study.id if attribute == "study_id" else row[attribute]
        counters[path] = counters.get(path, 0) + 1
        return counters[path]

    # template management

    def _require_study_manager(self, session: Session, requester: Requester, study_id: int) -> None:
        study = session.get(Study, study_id)
        if not study or study.deleted is not None:
            raise NotFoundError("Study does not exist.")
        if not self.permission_core.user_has_management_permission(
            session, PermissionScope.OWN, AtomicOperation.WRITE, requester, study_id
        ):
            raise NoPermissionError("No permission to manage standardizations of this study.")

    def create_standardization(
        self,
        requester: Requester,
        study_id: int,
        type_: str,
        field: list[str],
        field_id: str,
        rules: list[dict[str, Any]],
    ) -> Standardization:
        if not type_ or not field:
            raise MalformedInputError("A standardization needs a type and an output path.")
        validate_rules(rules)
        with session_scope(self.engine) as session:
            self._require_study_manager(session, requester, study_id)
            template = Standardization(study_id=study_id, type=type_, field=field, field_id=field_id, rules=rules)
            session.add(template)
            session.flush()
            session.refresh(template)
            logger.info("Standardization %s (%s) created for study %s", template.id, type_, study_id)
            return template

    def delete_standardization(self, requester: Requester, standardization_id: int) -> Standardization:
        with session_scope(self.engine) as session:
            template = session.get(Standardization, standardization_id)
            if not template or template.deleted is not None:
                raise NotFoundError("Standardization does not exist.")
            self._require_study_manager(session, requester, template.study_id)
            template.deleted = datetime.utcnow()
            session.add(template)
            session.flush()
            session.refresh(template)
            return template
