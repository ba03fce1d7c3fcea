"""
Transport Factory - Creates the configured backend transport instance.
"""

from typing import Any, Optional
from .base import ChatTransport
from .http_transport import HttpChatTransport


def create_transport(
    config: Optional[Any] = None,
    base_url: Optional[str] = None,
    **kwargs
) -> ChatTransport:
    """
    Create a backend transport from settings.

    Args:
        config: Settings object (defaults to the module-level settings)
        base_url: Override for ``config.api_base_url``
        **kwargs: Additional HttpChatTransport parameters (e.g. ``transport``)

    Returns:
        HttpChatTransport instance
    """
    if config is None:
        from ..config import settings as config

    url = base_url or config.api_base_url
    if not url:
        raise ValueError("Backend base URL is not configured (API_BASE_URL)")

    params = {
        "base_url": url,
        "api_key": config.api_key,
        "timeout": config.request_timeout,
        "log_requests": config.log_http_requests,
    }
    params.update(kwargs)
    return HttpChatTransport(**params)
