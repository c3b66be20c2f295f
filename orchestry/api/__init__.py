"""HTTP surface for operators and external agents."""

from orchestry.api.routes import create_app, create_orchestration_routes

__all__ = ["create_app", "create_orchestration_routes"]
