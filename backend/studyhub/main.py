# SPDX-License-Identifier: Apache-2.0
"""FastAPI app factory. Thin layer: security middleware, services, routers."""
import logging

from fastapi import FastAPI

from studyhub.config import settings
from studyhub.core.security import add_security_middleware, get_limiter
from studyhub.database import create_db_and_tables, engine as default_engine
from studyhub.dependencies import build_services
from studyhub.routers import data, projects, roles, studies, system


def create_app(engine=None) -> FastAPI:
    engine = engine if engine is not None else default_engine
    logging.getLogger("studyhub").setLevel(settings.log_level.upper())

    app = FastAPI(title="StudyHub API", version="0.1.0")
    app.state.limiter = get_limiter()
    app.state.services = build_services(engine)

    add_security_middleware(app)

    @app.on_event("startup")
    def on_startup():
        create_db_and_tables(engine)

    app.include_router(studies.router)
    app.include_router(data.router)
    app.include_router(projects.router)
    app.include_router(roles.router)
    app.include_router(system.router)

    return app


app = create_app()
