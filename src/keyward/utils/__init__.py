"""Shared utilities: errors, constants and file helpers."""
