"""Command-line interface for Migrate Bridge."""
