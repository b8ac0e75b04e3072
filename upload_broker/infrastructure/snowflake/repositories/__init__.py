"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .references import ReferenceRepository

__all__ = ["ReferenceRepository"]
