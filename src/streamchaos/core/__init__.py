"""Core infrastructure shared by the harness components."""
