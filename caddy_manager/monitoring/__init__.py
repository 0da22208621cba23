"""Health and metrics collection for the managed server."""
