"""Workflow graph builder backend services."""
