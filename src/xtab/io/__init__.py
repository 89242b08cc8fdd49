"""Document and clipboard hosts, file operations."""
