# coding: utf-8
"""
Sentry configuration for error monitoring
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


# Headers never sent to Sentry
SENSITIVE_HEADERS = ("authorization", "trbt-signature", "x-api-key", "cookie")


def init_sentry() -> None:
    """
    Initialize Sentry SDK (no-op without SENTRY_DSN)

    Features:
    - Automatic error capture
    - Performance monitoring (transactions)
    - Environment separation (dev/prod)
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                AsyncioIntegration(),
                SqlalchemyIntegration(),  # Database queries tracking
            ],
            # 10% of transactions in prod, all in dev
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Drop KeyboardInterrupt and filter auth/signature headers before sending
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']
        if isinstance(exc_value, KeyboardInterrupt):
            return None

    request = event.get('request')
    if request:
        headers = request.get('headers', {})
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = '[Filtered]'

    return event


def set_user_context(user_id: int, email: str = None):
    """
    Set user context for Sentry events

    Args:
        user_id: Internal user ID
        email: User email (optional, filtered unless PII is enabled)
    """
    sentry_sdk.set_user({
        "id": str(user_id),
        "username": email or f"user_{user_id}"
    })
