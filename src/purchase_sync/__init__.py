"""Purchase evidence ingestion and draft consolidation."""
