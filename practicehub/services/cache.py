"""
Per project type stage counts, invalidated by writers.

The transition engine and the scheduler both receive a ``CacheInvalidator``
and call ``invalidate`` after committing a change to a project's stage.
"""
import threading
import uuid
from typing import Dict, Optional, Protocol, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import Project


class CacheInvalidator(Protocol):
    def invalidate(self, project_type_id: Optional[uuid.UUID]) -> None:
        ...


class NullCache:
    def invalidate(self, project_type_id: Optional[uuid.UUID]) -> None:
        return None


class StageCountsCache:
    """Counts of active projects per stage name, keyed by project type."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = {}
        self._stale: Set[str] = set()
        self._generation: Dict[str, int] = {}

    def invalidate(self, project_type_id: Optional[uuid.UUID]) -> None:
        if project_type_id is None:
            return
        with self._lock:
            key = str(project_type_id)
            self._stale.add(key)
            self._generation[key] = self._generation.get(key, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            for key in self._counts:
                self._stale.add(key)
                self._generation[key] = self._generation.get(key, 0) + 1

    def is_stale(self, project_type_id: uuid.UUID) -> bool:
        key = str(project_type_id)
        with self._lock:
            return key not in self._counts or key in self._stale

    def get(self, db: Session, project_type_id: uuid.UUID) -> Dict[str, int]:
        key = str(project_type_id)
        with self._lock:
            if key in self._counts and key not in self._stale:
                return dict(self._counts[key])
            generation = self._generation.get(key, 0)
        counts = self._load(db, project_type_id)
        with self._lock:
            self._counts[key] = counts
            # An invalidation that raced the load keeps the entry stale
            if self._generation.get(key, 0) == generation:
                self._stale.discard(key)
        return dict(counts)

    @staticmethod
    def _load(db: Session, project_type_id: uuid.UUID) -> Dict[str, int]:
        rows = (
            db.query(Project.current_status, func.count(Project.id))
            .filter(
                Project.project_type_id == project_type_id,
                Project.inactive.is_(False),
                Project.archived.is_(False),
            )
            .group_by(Project.current_status)
            .all()
        )
        return {status: int(count) for status, count in rows}
