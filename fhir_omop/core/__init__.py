"""Core application configuration and utilities."""

from fhir_omop.core.config import Settings, settings
from fhir_omop.core.database import Base, get_session_maker, get_sync_engine, init_db

__all__ = [
    # Config
    "Settings",
    "settings",
    # Database
    "Base",
    "get_session_maker",
    "get_sync_engine",
    "init_db",
]
