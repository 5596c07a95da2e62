"""Database package exports.

Importing ``models`` registers every ORM class on ``Base.metadata`` so
``init_db`` can create the schema.
"""

from .base import Base
from . import models  # noqa: F401

__all__ = ["Base"]
