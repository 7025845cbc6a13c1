# SPDX-License-Identifier: Apache-2.0
"""Data access: field catalogue, record queries, uploads, deletions and summaries."""
from __future__ import annotations

import logging
from itertools import product
from typing import Any, Sequence

from sqlalchemy import distinct
from sqlmodel import Session, col, select

from studyhub.core.exceptions import NoPermissionError, NotFoundError
from studyhub.database import read_scope, session_scope
from studyhub.models import DataRecord, FieldEntry, Project, Study
from studyhub.schemas import DataClip, DataQuery, DataRequest, FieldInput, Requester
from studyhub.services.field_service import FieldCore, error_item, validate_value, value_as_text
from studyhub.services.permission_service import (
    AtomicOperation,
    PermissionCore,
    PermissionSet,
    check_data_entry_valid,
    combine_multiple_permissions,
)
from studyhub.services.query_service import (
    AccessMode,
    QueryPlanner,
    access_mode,
    apply_cohort,
    merge_records,
    metadata_predicate,
    redact_for_project,
)
from studyhub.services.standardization_service import Standardizer
from studyhub.services.study_service import StudyCore
from studyhub.services.version_service import DataVersionLedger

logger = logging.getLogger("studyhub")


class DataCore:
    def __init__(
        self,
        engine,
        permission_core: PermissionCore,
        study_core: StudyCore,
        field_core: FieldCore,
        ledger: DataVersionLedger,
        planner: QueryPlanner,
        standardizer: Standardizer,
    ):
        self.engine = engine
        self.permission_core = permission_core
        self.study_core = study_core
        self.field_core = field_core
        self.ledger = ledger
        self.planner = planner
        self.standardizer = standardizer

    # resolution helpers

    def _read_permission(
        self, session: Session, requester: Requester, study_id: int, project_id: int | None
    ) -> PermissionSet:
        """Union of the study-level and project-level read grants."""
        study_level = self.permission_core.user_has_data_permission(
            session, AtomicOperation.READ, requester, study_id
        )
        project_level = None
        if project_id is not None:
            project_level = self.permission_core.user_has_data_permission(
                session, AtomicOperation.READ, requester, study_id, project_id
            )
        permission = combine_multiple_permissions([study_level, project_level])
        if permission is None:
            raise NoPermissionError("No permission to read data of this study.")
        return permission

    def _write_permission(self, session: Session, requester: Requester, study_id: int) -> PermissionSet:
        permission = self.permission_core.user_has_data_permission(
            session, AtomicOperation.WRITE, requester, study_id
        )
        if permission is None:
            raise NoPermissionError("No permission to write data of this study.")
        return permission

    def _project_of_study(self, session: Session, study_id: int, project_id: int | None) -> Project | None:
        if project_id is None:
            return None
        project = self.study_core.find_one_project_or_raise(session, project_id)
        if project.study_id != study_id:
            raise NotFoundError("Project does not belong to this study.")
        return project

    def _versions(
        self,
        session: Session,
        study: Study,
        mode: AccessMode,
        version_id: str | None,
        live: bool,
    ) -> list[str | None]:
        visible = self.ledger.visible_versions(session, study)
        if mode == AccessMode.LIVE:
            return [None]
        if mode == AccessMode.ADMIN:
            if version_id is not None:
                known = [v.id for v in self.ledger.data_versions(session, study.id)]
                if version_id not in known:
                    raise NotFoundError("Data version does not exist.")
                return [version_id]
            return [None] if live else list(visible)
        if version_id is not None:
            if version_id not in visible:
                raise NoPermissionError("Data version is not visible.")
            return [version_id]
        return list(visible)

    def _catalogue(
        self,
        session: Session,
        study: Study,
        permission: PermissionSet,
        mode: AccessMode,
        versions: Sequence[str | None],
    ) -> list[FieldEntry]:
        # live records are described by frozen definitions as well as live ones
        if None in versions:
            versions = [*self.ledger.visible_versions(session, study), *versions]
        if mode == AccessMode.ADMIN:
            return self.field_core.fields_of_study(session, study.id, versions)
        if mode == AccessMode.LIVE:
            return self.field_core.fields_of_study(
                session, study.id, versions, permission=permission.live_view()
            )
        return self.field_core.fields_of_study(
            session, study.id, versions, metadata_filter=metadata_predicate(FieldEntry.metadata_, permission)
        )

    def _approved_field_ids(self, session: Session, project: Project) -> set[str]:
        if not project.approved_fields:
            return set()
        return set(
            session.exec(
                select(FieldEntry.field_id).where(col(FieldEntry.id).in_(project.approved_fields))
            )
        )

    def _query(
        self,
        session: Session,
        requester: Requester,
        study_id: int,
        request: DataRequest,
    ) -> tuple[Study, list[FieldEntry], dict[str, dict[str, dict[str, Any]]]]:
        study = self.study_core.find_one_study_or_raise(session, study_id)
        project = self._project_of_study(session, study_id, request.project_id)
        permission = self._read_permission(session, requester, study_id, request.project_id)
        mode = access_mode(permission, request.live)
        versions = self._versions(session, study, mode, request.version_id, request.live)
        fields = self._catalogue(session, study, permission, mode, versions)
        stmt = self.planner.plan(study_id, request.query, versions, fields, permission, request.live)
        merged = merge_records(session.exec(stmt))
        if project is not None:
            approved = self._approved_field_ids(session, project)
            fields = [f for f in fields if f.field_id in approved]
            merged = redact_for_project(merged, project, approved)
        cohort = [[c.model_dump() for c in group] for group in request.query.cohort or []]
        return study, fields, apply_cohort(merged, cohort)

    # reads

    def get_study_fields(
        self,
        requester: Requester,
        study_id: int,
        project_id: int | None = None,
        version_id: str | None = None,
        live: bool = False,
    ) -> list[FieldEntry]:
        with read_scope(self.engine) as session:
            study = self.study_core.find_one_study_or_raise(session, study_id)
            project = self._project_of_study(session, study_id, project_id)
            permission = self._read_permission(session, requester, study_id, project_id)
            mode = access_mode(permission, live)
            versions = self._versions(session, study, mode, version_id, live)
            fields = self._catalogue(session, study, permission, mode, versions)
            if project is not None:
                approved = self._approved_field_ids(session, project)
                fields = [f for f in fields if f.field_id in approved]
            return fields

    def get_data_records(self, requester: Requester, study_id: int, request: DataRequest) -> Any:
        with read_scope(self.engine) as session:
            study, fields, merged = self._query(session, requester, study_id, request)
            return self.standardizer.format(session, study, fields, merged, request.query.format)

    # field definitions

    def create_new_fields(self, requester: Requester, study_id: int, inputs: Sequence[FieldInput]) -> list[dict[str, str]]:
        with session_scope(self.engine) as session:
            self.study_core.find_one_study_or_raise(session, study_id)
            permission = self._write_permission(session, requester, study_id)
            return self.field_core.create_new_fields(
                session, study_id, permission, [i.model_dump() for i in inputs]
            )

    def edit_field(self, requester: Requester, study_id: int, field_id: str, changes: FieldInput) -> FieldEntry:
        if not requester.is_admin:
            raise NoPermissionError("Only admins can edit field definitions.")
        with session_scope(self.engine) as session:
            study = self.study_core.find_one_study_or_raise(session, study_id)
            versions = self.ledger.visible_versions(session, study)
            entry = self.field_core.edit_field(session, study_id, versions, field_id, changes.model_dump())
            session.flush()
            session.refresh(entry)
            return entry

    def delete_field(self, requester: Requester, study_id: int, field_id: str) -> FieldEntry:
        with session_scope(self.engine) as session:
            study = self.study_core.find_one_study_or_raise(session, study_id)
            permission = self._write_permission(session, requester, study_id)
            if not check_data_entry_valid(permission, field_id):
                raise NoPermissionError(f"No permission to delete field {field_id}.")
            versions = self.ledger.visible_versions(session, study)
            entry = self.field_core.delete_field(session, study_id, versions, field_id)
            session.flush()
            session.refresh(entry)
            logger.info("Study %s: field %s deleted", study_id, field_id)
            return entry

    # data records

    def upload_data(self, requester: Requester, study_id: int, clips: Sequence[DataClip]) -> list[dict[str, str]]:
        """Append live records; clips failing permission or type checks are skipped and reported."""
        errors: list[dict[str, str]] = []
        with session_scope(self.engine) as session:
            study = self.study_core.find_one_study_or_raise(session, study_id)
            permission = self._write_permission(session, requester, study_id)
            visible = self.ledger.visible_versions(session, study)
            live_catalogue = self.field_core.fields_of_study(
                session, study_id, [*visible, None], tombstones_hide=True
            )
            fields = {f.field_id: f for f in live_catalogue}
            written = 0
            for clip in clips:
                if not check_data_entry_valid(permission, clip.field_id, clip.subject_id, clip.visit_id):
                    errors.append(error_item("NO_PERMISSION_ERROR", f"Field {clip.field_id}: no permission to upload."))
                    continue
                field = fields.get(clip.field_id)
                if field is None:
                    errors.append(error_item("CLIENT_ACTION_ON_NON_EXISTENT_ENTRY", f"Field {clip.field_id}: Field Not found"))
                    continue
                value = value_as_text(clip.value)
                problem = validate_value(field, value)
                if problem:
                    errors.append(error_item("CLIENT_MALFORMED_INPUT", problem))
                    continue
                session.add(DataRecord(
                    study_id=study_id,
                    subject_id=clip.subject_id,
                    visit_id=clip.visit_id,
                    field_id=clip.field_id,
                    value=value,
                    metadata_=dict(clip.metadata or {}),
                ))
                written += 1
            logger.info("Study %s: %d data clips uploaded, %d rejected", study_id, written, len(errors))
        return errors

    def delete_data_records(
        self,
        requester: Requester,
        study_id: int,
        subject_ids: Sequence[str] = (),
        visit_ids: Sequence[str] = (),
        field_ids: Sequence[str] = (),
    ) -> list[dict[str, str]]:
        """Write tombstones for every existing coordinate in the requested product.

        Empty id lists stand for every id known in the study. Coordinates the
        requester may not write are skipped without error.
        """
        errors: list[dict[str, str]] = []
        with session_scope(self.engine) as session:
            self.study_core.find_one_study_or_raise(session, study_id)
            permission = self._write_permission(session, requester, study_id)

            def known(column):
                return set(session.exec(select(distinct(column)).where(DataRecord.study_id == study_id)))

            subjects = set(subject_ids) or known(DataRecord.subject_id)
            visits = set(visit_ids) or known(DataRecord.visit_id)
            all_fields = known(DataRecord.field_id)
            for missing in sorted(set(field_ids) - all_fields):
                errors.append(error_item("CLIENT_ACTION_ON_NON_EXISTENT_ENTRY", f"Field {missing}: no data found."))
            fields = set(field_ids) & all_fields if field_ids else all_fields
            existing = {
                tuple(row)
                for row in session.exec(
                    select(DataRecord.subject_id, DataRecord.visit_id, DataRecord.field_id)
                    .where(DataRecord.study_id == study_id)
                    .distinct()
                )
            }
            tombstones = 0
            for subject_id, visit_id, field_id in product(sorted(subjects), sorted(visits), sorted(fields)):
                if (subject_id, visit_id, field_id) not in existing:
                    continue
                if not check_data_entry_valid(permission, field_id, subject_id, visit_id):
                    continue
                session.add(DataRecord(
                    study_id=study_id,
                    subject_id=subject_id,
                    visit_id=visit_id,
                    field_id=field_id,
                    value=None,
                ))
                tombstones += 1
            logger.info("Study %s: %d data records tombstoned", study_id, tombstones)
        return errors

    # checks and summaries

    def check_data_complete(self, requester: Requester, study_id: int) -> list[dict[str, str]]:
        """Type errors among the latest live values of the study."""
        with read_scope(self.engine) as session:
            study = self.study_core.find_one_study_or_raise(session, study_id)
            self._write_permission(session, requester, study_id)
            visible = self.ledger.visible_versions(session, study)
            live_catalogue = self.field_core.fields_of_study(
                session, study_id, [*visible, None], tombstones_hide=True
            )
            fields = {f.field_id: f for f in live_catalogue}
            stmt = self.planner.latest_records(
                [DataRecord.study_id == study_id, col(DataRecord.version_id).is_(None)], [None]
            )
            problems = []
            for record in session.exec(stmt):
                field = fields.get(record.field_id)
                message = (
                    f"Field {record.field_id}: Field Not found" if field is None
                    else validate_value(field, record.value)
                )
                if message:
                    problems.append({
                        "subject_id": record.subject_id,
                        "visit_id": record.visit_id,
                        "field_id": record.field_id,
                        "error": message,
                    })
            return problems

    def _summary(self, session: Session, study: Study, merged: dict[str, dict[str, dict[str, Any]]]) -> dict[str, Any]:
        current = self.ledger.current_version(session, study)
        pairs = [
            (subject_id, visit_id)
            for subject_id, visits in merged.items()
            for visit_id, row in visits.items()
            if any(v is not None for v in row.values())
        ]
        return {
            "subjects": sorted({s for s, _ in pairs}),
            "visits": sorted({v for _, v in pairs}),
            "num_of_records": len(pairs),
            "current_data_version": current.version if current else None,
            "data_versions": [v.version for v in self.ledger.data_versions(session, study.id)],
        }

    def study_summary(self, requester: Requester, study_id: int) -> dict[str, Any]:
        with read_scope(self.engine) as session:
            study, _, merged = self._query(session, requester, study_id, DataRequest(query=DataQuery()))
            return self._summary(session, study, merged)

    def project_summary(self, requester: Requester, project_id: int) -> dict[str, Any]:
        with read_scope(self.engine) as session:
            project = self.study_core.find_one_project_or_raise(session, project_id)
            study, _, merged = self._query(
                session, requester, project.study_id, DataRequest(project_id=project_id)
            )
            return self._summary(session, study, merged)
