# SPDX-License-Identifier: Apache-2.0
"""Study and project lifecycle."""
from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime
from typing import Iterable

from sqlalchemy import distinct
from sqlmodel import Session, col, select

from studyhub.config import PSEUDONYM_PREFIX_LENGTH
from studyhub.core.exceptions import MalformedInputError, NoPermissionError, NotFoundError
from studyhub.database import read_scope, session_scope
from studyhub.models import DataRecord, FieldEntry, Project, Study, StudyType
from studyhub.schemas import Requester
from studyhub.services.permission_service import AtomicOperation, PermissionCore, PermissionScope

logger = logging.getLogger("studyhub")

_system_random = random.SystemRandom()


def generate_pseudonyms(subject_ids: Iterable[str], prefix_length: int = PSEUDONYM_PREFIX_LENGTH) -> dict[str, str]:
    """Bijective mapping subject id → ``<prefix><n>`` with the labels uniformly shuffled."""
    subjects = sorted(set(subject_ids))
    prefix = uuid.uuid4().hex[:prefix_length].upper()
    labels = [f"{prefix}{n}" for n in range(len(subjects))]
    _system_random.shuffle(labels)
    return dict(zip(subjects, labels))


def apply_list_changes(current: list, add: Iterable, remove: Iterable) -> list:
    """Add first, then remove: an id in both lists ends up removed."""
    result = list(current)
    for item in add:
        if item not in result:
            result.append(item)
    removed = set(remove)
    return [item for item in result if item not in removed]


class StudyCore:
    def __init__(self, engine, permission_core: PermissionCore):
        self.engine = engine
        self.permission_core = permission_core

    # lookups

    def find_one_study_or_raise(self, session: Session, study_id: int) -> Study:
        study = session.get(Study, study_id)
        if not study or study.deleted is not None:
            raise NotFoundError("Study does not exist.")
        return study

    def find_one_project_or_raise(self, session: Session, project_id: int) -> Project:
        project = session.get(Project, project_id)
        if not project or project.deleted is not None:
            raise NotFoundError("Project does not exist.")
        return project

    def require_management(
        self,
        session: Session,
        requester: Requester,
        study_id: int,
        operation: AtomicOperation = AtomicOperation.WRITE,
        project_id: int | None = None,
    ) -> None:
        """Study-level ``own`` grant, or a project-level one when a project is given."""
        if self.permission_core.user_has_management_permission(
            session, PermissionScope.OWN, operation, requester, study_id
        ):
            return
        if project_id is not None and self.permission_core.user_has_management_permission(
            session, PermissionScope.OWN, operation, requester, study_id, project_id
        ):
            return
        raise NoPermissionError("No permission for this operation.")

    def list_studies(self, requester: Requester) -> list[Study]:
        with read_scope(self.engine) as session:
            studies = list(session.exec(select(Study).where(col(Study.deleted).is_(None)).order_by(Study.id)))
            if requester.is_admin:
                return studies
            return [
                s for s in studies
                if self.permission_core.user_has_management_permission(
                    session, PermissionScope.OWN, AtomicOperation.READ, requester, s.id
                )
                or self.permission_core.user_has_data_permission(
                    session, AtomicOperation.READ, requester, s.id
                ) is not None
            ]

    def get_study(self, requester: Requester, study_id: int) -> Study:
        with read_scope(self.engine) as session:
            study = self.find_one_study_or_raise(session, study_id)
            if not requester.is_admin and self.permission_core.user_has_data_permission(
                session, AtomicOperation.READ, requester, study_id
            ) is None:
                self.require_management(session, requester, study_id, AtomicOperation.READ)
            return study

    def get_project(self, requester: Requester, project_id: int) -> Project:
        with read_scope(self.engine) as session:
            project = self.find_one_project_or_raise(session, project_id)
            self.require_management(session, requester, project.study_id, AtomicOperation.READ, project.id)
            return project

    # studies

    def create_new_study(self, requester: Requester, name: str, description: str = "", type_: str = StudyType.ANY) -> Study:
        if not requester.is_admin:
            raise NoPermissionError("Only admins can create studies.")
        if type_ not in StudyType.ALL:
            raise MalformedInputError(f"Unknown study type {type_!r}.")
        with session_scope(self.engine) as session:
            existing = session.exec(
                select(Study).where(Study.name == name, col(Study.deleted).is_(None))
            ).first()
            if existing is not None:
                raise MalformedInputError("Study name already used.")
            study = Study(name=name, description=description, type=type_, created_by=requester.id)
            session.add(study)
            session.flush()
            session.refresh(study)
            logger.info("Study %s (%s) created by %s", study.id, name, requester.id)
            return study

    def edit_study(self, requester: Requester, study_id: int, description: str) -> Study:
        with session_scope(self.engine) as session:
            study = self.find_one_study_or_raise(session, study_id)
            self.require_management(session, requester, study_id)
            study.description = description
            study.last_modified = datetime.utcnow()
            session.add(study)
            session.flush()
            session.refresh(study)
            return study

    def delete_study(self, requester: Requester, study_id: int) -> Study:
        """Soft-delete the study, its projects and all their roles in one transaction."""
        if not requester.is_admin:
            raise NoPermissionError("Only admins can delete studies.")
        with session_scope(self.engine) as session:
            study = self.find_one_study_or_raise(session, study_id)
            now = datetime.utcnow()
            study.deleted = now
            session.add(study)
            projects = list(
                session.exec(
                    select(Project).where(Project.study_id == study_id, col(Project.deleted).is_(None))
                )
            )
            for project in projects:
                project.deleted = now
                session.add(project)
            session.flush()
            roles = self.permission_core.remove_roles_for(session, study_id=study_id)
            session.flush()
            logger.info("Study %s deleted with %d projects and %d roles", study_id, len(projects), roles)
            return study

    # projects

    def create_project_for_study(
        self,
        requester: Requester,
        study_id: int,
        name: str,
        approved_fields: list[int] | None = None,
    ) -> Project:
        with session_scope(self.engine) as session:
            self.find_one_study_or_raise(session, study_id)
            self.require_management(session, requester, study_id)
            approved = list(dict.fromkeys(approved_fields or []))
            if approved and not self.check_fields_exist(session, study_id, approved):
                raise NotFoundError("One or more approved fields do not exist.")
            subject_ids = session.exec(
                select(distinct(DataRecord.subject_id)).where(DataRecord.study_id == study_id)
            )
            project = Project(
                study_id=study_id,
                name=name,
                created_by=requester.id,
                patient_mapping=generate_pseudonyms(subject_ids),
                approved_fields=approved,
            )
            session.add(project)
            session.flush()
            session.refresh(project)
            logger.info(
                "Project %s created for study %s with %d pseudonymised subjects",
                project.id, study_id, len(project.patient_mapping),
            )
            return project

    def delete_project(self, requester: Requester, project_id: int) -> Project:
        """Soft-delete the project and its roles in one transaction."""
        with session_scope(self.engine) as session:
            project = self.find_one_project_or_raise(session, project_id)
            self.require_management(session, requester, project.study_id)
            project.deleted = datetime.utcnow()
            session.add(project)
            session.flush()
            roles = self.permission_core.remove_roles_for(session, project_id=project_id)
            session.flush()
            logger.info("Project %s deleted with %d roles", project_id, roles)
            return project

    def check_fields_exist(self, session: Session, study_id: int, field_entry_ids: Iterable[int]) -> bool:
        ids = set(field_entry_ids)
        if not ids:
            return True
        found = session.exec(
            select(FieldEntry.id).where(
                FieldEntry.study_id == study_id,
                col(FieldEntry.id).in_(ids),
                col(FieldEntry.date_deleted).is_(None),
            )
        )
        return set(found) == ids

    def edit_project_approved_fields(
        self,
        requester: Requester,
        project_id: int,
        add: list[int] | None = None,
        remove: list[int] | None = None,
    ) -> Project:
        with session_scope(self.engine) as session:
            project = self.find_one_project_or_raise(session, project_id)
            self.require_management(session, requester, project.study_id)
            add = list(add or [])
            if add and not self.check_fields_exist(session, project.study_id, add):
                raise NotFoundError("One or more approved fields do not exist.")
            project.approved_fields = apply_list_changes(project.approved_fields or [], add, remove or [])
            project.last_modified = datetime.utcnow()
            session.add(project)
            session.flush()
            session.refresh(project)
            return project

    def projects_of_study(self, requester: Requester, study_id: int) -> list[Project]:
        with read_scope(self.engine) as session:
            self.find_one_study_or_raise(session, study_id)
            self.require_management(session, requester, study_id, AtomicOperation.READ)
            return list(
                session.exec(
                    select(Project)
                    .where(Project.study_id == study_id, col(Project.deleted).is_(None))
                    .order_by(Project.id)
                )
            )
