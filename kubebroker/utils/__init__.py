"""Utility modules for the broker."""
