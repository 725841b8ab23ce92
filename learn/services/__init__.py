"""Domain services: persistence, authentication, ingestion and events."""
