"""JSON-lines stdio server."""
