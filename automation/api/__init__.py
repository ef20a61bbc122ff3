"""REST API for workflow automation."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]
