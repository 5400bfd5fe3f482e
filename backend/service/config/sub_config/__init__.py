"""Registered sub-configs, grouped by category."""
