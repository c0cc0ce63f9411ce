"""
Service layer.

Each service encapsulates the business logic of one domain (users,
content, preferences, the delivery queue, channels).  Services talk to
SQLite directly and raise ``ValueError`` for missing records so that
API handlers stay thin and map errors to HTTP status codes.
"""
