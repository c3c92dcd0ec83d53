"""Base repository with shared get-by-ID and error translation.

Subclasses specify model_class, id_column and not_found_error. Every
database call made through ``_guard()`` turns driver/ORM failures into
``StoreError`` and leaves the session rolled back, so nothing above the
repository layer ever sees a raw SQLAlchemy exception.
"""

from contextlib import contextmanager
from typing import Generic, Iterator, Optional, Type, TypeVar

import sqlalchemy.exc
from sqlalchemy.orm import Query, Session

from ..database import Base
from ..exceptions import ContextVCException, StoreError

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Shared repository logic for SQLAlchemy models.

    Class variables to set in subclasses:
        model_class:     The SQLAlchemy model (e.g., ContextVersion)
        id_column:       Name of the primary-key column (default "id")
        not_found_error: Exception class to raise from get_by_id
    """

    model_class: Type[ModelT]
    id_column: str = "id"
    not_found_error: Type[ContextVCException]

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlalchemy.exc.SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Failed to {operation}", original_error=e) from e

    def _base_query(self) -> Query:
        return self.db.query(self.model_class)

    def get_by_id(self, entity_id: str) -> ModelT:
        """Get entity by primary key. Raises not_found_error if missing."""
        entity = self.get_by_id_optional(entity_id)
        if entity is None:
            raise self.not_found_error(entity_id)
        return entity

    def get_by_id_optional(self, entity_id: str) -> Optional[ModelT]:
        """Get entity by primary key, or None if not found."""
        col = getattr(self.model_class, self.id_column)
        with self._guard(f"load {self.model_class.__tablename__} {entity_id}"):
            return self._base_query().filter(col == entity_id).first()
