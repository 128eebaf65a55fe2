"""Sentry error tracking for the API process and Celery workers.

init_sentry() is a no-op without SENTRY_DSN. Provider credentials travel in
request headers, so they are scrubbed from every event before it is sent.
"""

import logging

from promptwatch.core.config import settings

logger = logging.getLogger(__name__)

# Header names used by the provider adapters to carry API keys
_CREDENTIAL_HEADERS = {"authorization", "x-api-key"}
_FILTERED = "[Filtered]"


def scrub_credentials(event: dict, hint: dict | None = None) -> dict:
    """before_send hook: blank credential headers and the ``key`` query parameter."""
    request = event.get("request") or {}
    headers = request.get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _CREDENTIAL_HEADERS:
                headers[name] = _FILTERED
    query = request.get("query_string")
    if isinstance(query, str) and "key=" in query:
        request["query_string"] = _FILTERED
    return event


def init_sentry() -> bool:
    """Returns True when Sentry was initialized."""
    if not settings.sentry_dsn:
        logger.debug("SENTRY_DSN not set, error tracking disabled")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release="promptwatch@1.0.0",
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=scrub_credentials,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(monitor_beat_tasks=True),
        ],
    )
    logger.info("Sentry enabled (env=%s)", settings.app_env)
    return True
