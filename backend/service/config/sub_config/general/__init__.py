"""General sub-configs."""
