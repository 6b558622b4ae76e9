"""Vigil command-line interface."""
