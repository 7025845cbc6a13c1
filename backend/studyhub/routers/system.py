# SPDX-License-Identifier: Apache-2.0
"""Health and version endpoints."""
import sys

import fastapi
import sqlmodel
from fastapi import APIRouter, Request

from studyhub.core.security import rate_limit

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
def health():
    """Liveness/readiness."""
    return {"status": "ok"}


@router.get("/versions")
@rate_limit("100/hour")
def system_versions(request: Request):
    """Library and interpreter versions of the running deployment."""
    return {
        "fastapi_version": getattr(fastapi, "__version__", "unknown"),
        "sqlmodel_version": getattr(sqlmodel, "__version__", "unknown"),
        "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
    }
