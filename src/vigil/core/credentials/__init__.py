"""Credential policy: strength, history, breach lookup, expiry, lockout."""
