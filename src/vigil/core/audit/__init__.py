"""Hash-chained audit ledger."""
