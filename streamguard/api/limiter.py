"""slowapi limiter for the operator API.

Management endpoints (rotation, rule creation, erasure, reports) are capped
per client address on top of RequestGuardMiddleware's endpoint-class limits.
Shared between api/router.py (route decorators) and main.py
(app.state.limiter + SlowAPIMiddleware).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

MANAGEMENT_RATE_LIMIT = "20/minute"

# Moderation and fraud analysis are called by other backend services per
# user action, so they get a much higher ceiling.
ANALYSIS_RATE_LIMIT = "600/minute"
