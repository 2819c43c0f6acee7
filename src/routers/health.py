"""
Health check routes for the token broker.
"""

from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from oauth import OAuthManager, RemoteConfig


def create_health_router(
    oauth_manager: OAuthManager,
    connections: Dict[str, RemoteConfig],
    app_name: str,
    app_version: str,
) -> APIRouter:
    router = APIRouter(tags=["Health"])

    @router.get("/", include_in_schema=False)
    async def root_health_check() -> JSONResponse:
        """Basic health check and information endpoint."""
        return JSONResponse(
            content={
                "service": app_name,
                "version": app_version,
                "status": "healthy",
                "connections": len(connections),
            }
        )

    @router.get("/health")
    async def health_check() -> JSONResponse:
        return JSONResponse(content={
            "status": "healthy",
            "service": app_name,
            "version": app_version,
            "login_provider": oauth_manager.login_provider is not None,
        })

    return router
