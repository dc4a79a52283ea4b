"""
SQLModel table definitions.

These describe the external (snake_case) storage shape consumed by the SQL
persistence gateway. Services never use them directly; they exchange
camelCase records through the gateway.
"""

from .profile import ProfileRow
from .society import SocietyRow
from .flat import FlatRow

TABLES = {
    "users": ProfileRow,
    "societies": SocietyRow,
    "flats": FlatRow,
}

__all__ = [
    "ProfileRow",
    "SocietyRow",
    "FlatRow",
    "TABLES",
]
