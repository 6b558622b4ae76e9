"""Vigil core: audit, monitoring, sessions, and credentials."""
