"""Sliding-window counters and threat detection."""
