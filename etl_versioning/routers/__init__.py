"""
API routers
"""

from fastapi import Request

from etl_versioning.services.container import VersioningServices


def get_services(request: Request) -> VersioningServices:
    """앱 lifespan 에서 구성된 서비스 컨테이너"""
    return request.app.state.services
