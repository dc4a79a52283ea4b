"""
societyhub: identity/session binding and occupancy consistency for a
residential-community management application.
"""

__version__ = "0.1.0"
