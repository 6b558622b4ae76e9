"""Background scheduler."""
