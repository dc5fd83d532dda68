"""
Base repository interface for data access operations.
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar, Optional, List

T = TypeVar('T')
M = TypeVar('M')


class Repository(ABC, Generic[T, M]):
    """
    Base repository interface for keyed entities.

    ``T`` is the stored entity, ``M`` the lightweight summary returned by
    listings (so callers can render a list without loading every record).
    """

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """
        Retrieve an entity by its ID.

        Returns
        -------
        Optional[T]
            The entity if found, None otherwise.
        """

    @abstractmethod
    def save(self, entity: T) -> None:
        """Save or update an entity under its own ID."""

    @abstractmethod
    def delete(self, id: str) -> bool:
        """
        Delete an entity by its ID.

        Returns
        -------
        bool
            True if the entity was deleted, False if not found.
        """

    @abstractmethod
    def list_all(self) -> List[M]:
        """List summaries of all entities."""
