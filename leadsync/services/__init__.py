"""Business services: credentials, reconciliation, ranking views and sync."""
