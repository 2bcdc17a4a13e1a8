"""Job DAG execution: scheduling, retries, caching and supersede handling."""
