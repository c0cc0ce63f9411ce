"""
Application package initializer.

The service is organised by layer: ``core`` (configuration, database,
logging, security), ``schemas`` (pydantic models), ``services``
(business logic, provider clients and the delivery scheduler) and
``api`` (versioned HTTP routers).  Each domain exposes a router defined
in ``api/v1/endpoints``.
"""

from .main import app  # noqa: F401
