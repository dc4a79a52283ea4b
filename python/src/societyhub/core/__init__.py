"""Core configuration, logging and token verification."""
