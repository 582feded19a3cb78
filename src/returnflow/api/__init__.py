"""API - HTTP gateway over the control servers and the decision engine.

Endpoints:
    POST /decisions
    POST /servers/{server}/requests
    GET  /health, /ready
"""

from returnflow.api.gateway import app
from returnflow.api.schemas import ErrorResponse
from returnflow.api.service import ControlPlaneService

__all__ = [
    "app",
    "ErrorResponse",
    "ControlPlaneService",
]
