"""
Services
"""

from .container import VersioningServices, build_services
from .mongo_service import MongoService

__all__ = ["VersioningServices", "build_services", "MongoService"]
