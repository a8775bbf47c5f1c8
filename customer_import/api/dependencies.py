"""
Shared dependencies for the API routers.

Authentication happens upstream; the gateway forwards the resolved tenant and
user as headers. The pipeline instance lives on ``app.state``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from customer_import.domain.imports.pipeline import ImportPipeline


@dataclass(frozen=True)
class Caller:
    organization_id: int
    user_id: Optional[int]


def get_caller(
    x_organization_id: Optional[int] = Header(default=None),
    x_user_id: Optional[int] = Header(default=None),
) -> Caller:
    """Tenant and user identity supplied by the authenticating gateway."""
    if x_organization_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Organization-Id header")
    return Caller(organization_id=x_organization_id, user_id=x_user_id)


def get_pipeline(request: Request) -> ImportPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Import pipeline is not initialized")
    return pipeline
