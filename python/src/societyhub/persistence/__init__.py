"""
Persistence gateway.

- casing: snake_case <-> camelCase field translation
- gateway: abstract record store interface
- sql_gateway: SQLAlchemy async implementation
- database: engine and session factory
"""

from .casing import to_external, to_internal
from .gateway import RecordGateway, Record
from .sql_gateway import SQLRecordGateway

__all__ = [
    "to_external",
    "to_internal",
    "RecordGateway",
    "Record",
    "SQLRecordGateway",
]
