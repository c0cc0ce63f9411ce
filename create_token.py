"""Print a long-lived access token for an existing account.

Handy for calling the admin-only content endpoints from scripts:

    python create_token.py admin@example.com
"""
import os
import sys

from powerpulse_api.app.core.security import create_access_token

# Token lifetime: 365 days, in seconds.
TOKEN_LIFETIME = 365 * 24 * 60 * 60

email = sys.argv[1] if len(sys.argv) > 1 else os.getenv("ADMIN_EMAIL", "")
if not email:
    sys.exit("usage: python create_token.py <email>  (or set ADMIN_EMAIL)")
token = create_access_token({"sub": email}, expires_delta=TOKEN_LIFETIME)
print(token)
