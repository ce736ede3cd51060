"""Flow engine: routing, sessions, node execution."""
