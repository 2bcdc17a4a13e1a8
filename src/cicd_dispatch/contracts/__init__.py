"""Wire formats for event ingestion and dispatch decisions."""
