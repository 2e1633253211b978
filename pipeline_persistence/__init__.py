"""
Pipeline Persistence module.

Database implementation of the run repository. Currently supports SQLite;
the RunRepository contract in pipeline_common allows other backends.
"""

from .sqlite_repository import SQLiteRunRepository

__all__ = ["SQLiteRunRepository"]
