"""
Endpoint subpackage for API v1.

Each module defines an APIRouter for one domain (users, content,
delivery, notifications, webhooks, cron).  The routers are aggregated in
``router.py`` at the package level.
"""
