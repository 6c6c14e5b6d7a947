"""Reporting for migration runs."""
