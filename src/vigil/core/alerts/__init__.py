"""Alert classification, incidents, and notification."""
