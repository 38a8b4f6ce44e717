"""Core runtime wiring: configuration, logging, time, auth, and error handling."""
