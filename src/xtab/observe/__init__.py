"""Event emission and tracing."""
