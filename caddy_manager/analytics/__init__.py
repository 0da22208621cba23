"""Access and error log analytics."""
