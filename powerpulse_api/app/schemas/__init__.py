"""
Pydantic schemas shared by the services and the HTTP layer.

One module per domain: users, content, delivery (preferences, queue,
logs), notifications and messenger messages.
"""
