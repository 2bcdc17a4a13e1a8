"""Publishing run results to external systems."""
