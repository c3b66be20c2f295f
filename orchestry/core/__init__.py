"""Core infrastructure: store, states, errors and configuration."""
