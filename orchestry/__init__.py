"""Orchestry: orchestration core for hierarchical multi-agent software delivery."""

__version__ = "0.1.0"
