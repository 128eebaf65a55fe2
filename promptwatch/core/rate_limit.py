"""slowapi limiter for the trigger endpoints.

Every accepted trigger fans out to prompts x providers paid model calls, so
run and reanalysis requests are limited per client. Read endpoints are not.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from promptwatch.core.config import settings


def client_key(request: Request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or get_remote_address(request)


RUN_LIMIT = settings.run_rate_limit
REANALYZE_LIMIT = settings.reanalyze_rate_limit

limiter = Limiter(key_func=client_key, enabled=settings.rate_limit_enabled)
