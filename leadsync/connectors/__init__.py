"""Outbound connectors to external services."""
