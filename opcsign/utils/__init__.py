"""Utility modules for opcsign."""
