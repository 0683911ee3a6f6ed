"""Search caching for CRM lookups."""
