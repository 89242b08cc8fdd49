"""Node tree and XML codec."""
