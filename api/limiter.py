"""
api/limiter.py -- The one slowapi Limiter for the whole app.

api/main.py mounts it through SlowAPIMiddleware; api/routes/user.py puts
LOGIN_RATE_LIMIT on POST /api/user/login with @limiter.limit(). Both must
import this object: counters live in the limiter's memory:// storage, so a
second Limiter would count separately and never trip.

Keyed on the client address. RATE_LIMIT_ENABLED=false turns every limit
off, which is how the test suite runs.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
