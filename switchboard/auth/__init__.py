"""OAuth for tool servers."""
