"""
Ops Desk - Core Package
=======================

Core business logic, models, schemas and the policy state machine.
"""

from opsdesk.core.config import settings
from opsdesk.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
