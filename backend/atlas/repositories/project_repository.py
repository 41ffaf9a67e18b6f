"""
Repository for Project lookups. Projects are managed elsewhere; only reads here.
"""
from atlas.models.project import Project
from atlas.repositories.base import BaseRepository


class ProjectRepository(BaseRepository[Project]):
    """Repository for Project database operations."""

    model = Project
