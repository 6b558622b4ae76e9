"""Session lifecycle management."""
