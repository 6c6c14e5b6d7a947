"""Utility modules for Migrate Bridge."""
