"""HTTP surface of the search service (FastAPI)."""
