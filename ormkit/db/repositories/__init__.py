from ormkit.db.repositories.base import Repository
from ormkit.db.repositories.edit import EditRepository
from ormkit.db.repositories.read import ReadRepository

__all__ = [
    "Repository",
    "ReadRepository",
    "EditRepository",
]
