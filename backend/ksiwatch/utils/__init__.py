"""Shared helpers for KSIWatch."""
