"""
Abstract record store consumed by the identity and occupancy services.

Records crossing this interface use internal camelCase field names.
Implementations translate to their own storage convention.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

Record = Dict[str, Any]
RecordPredicate = Callable[[Record], bool]


class RecordGateway(ABC):
    """
    Generic get/list/insert/update/delete over named collections.
    
    The backing store gives no multi-record transaction guarantee; callers
    that change two records must handle partial failure themselves.
    """
    
    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        """
        Fetch one record by id.
        
        Returns:
            The record, or None if it does not exist
        
        Raises:
            PersistenceError: If the store fails
        """
    
    @abstractmethod
    async def list(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        predicate: Optional[RecordPredicate] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        """
        List records.
        
        Args:
            collection: Collection name
            filters: Equality filters on internal field names, applied by the store
            predicate: Optional callable applied to each record afterwards
            order_by: Internal field names; prefix with "-" for descending
        """
    
    @abstractmethod
    async def insert(self, collection: str, record: Record) -> Record:
        """
        Insert a record and return it as stored.
        
        Raises:
            DuplicateRecordError: If the id or a unique value already exists
        """
    
    @abstractmethod
    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """
        Apply a partial update and return the updated record.
        
        Args:
            match: Optional equality guard evaluated atomically with the update
        
        Raises:
            StaleRecordError: If ``match`` no longer holds
            PersistenceError: If the record does not exist
        """
    
    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Delete a record; deleting a missing record is a no-op."""
    
    async def find_one(self, collection: str, **filters: Any) -> Optional[Record]:
        """Return the first record matching equality filters, or None."""
        records = await self.list(collection, filters=filters)
        return records[0] if records else None
