"""HTTP routes: the health check and the root placeholder."""
