from __future__ import annotations
import os
from typing import Optional

from ..services.storage import ClientPreferences
from .data_gateway import GatewayError
from .fasten_api_gateway import FastenApiGateway, normalize_domain


def resolve_domain(preferences: ClientPreferences) -> Optional[str]:
    """Stored domain first, then the FASTEN_DOMAIN default from the environment."""
    domain = preferences.domain or os.getenv('FASTEN_DOMAIN') or ''
    domain = domain.strip()
    return normalize_domain(domain) if domain else None


def get_gateway(preferences: ClientPreferences) -> FastenApiGateway:
    """Return a gateway bound to the configured server domain."""
    domain = resolve_domain(preferences)
    if not domain:
        raise GatewayError("No server domain configured")
    return FastenApiGateway(domain)
