"""Session state, persistence, recovery and lifecycle."""
