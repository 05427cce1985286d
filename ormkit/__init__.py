"""Repository base classes, migration seeding and column defaults on SQLAlchemy."""

__version__ = "0.1.0"
