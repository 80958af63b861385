"""
providers — Per-provider delivery adapters.

Each adapter exposes:
    deliver(message) → DeliveryResult   (raises classified errors only)

Adapters are stateless apart from their HTTP client. Retry, failover and
health tracking live in the dispatcher and the registry.
"""

from __future__ import annotations

from backend.app.core.config import ProviderConfig
from backend.app.delivery.models import Channel
from backend.app.delivery.providers.base import ProviderAdapter
from backend.app.delivery.providers.http import HttpProvider
from backend.app.delivery.providers.simulated import SimulatedProvider


def build_provider(config: ProviderConfig, *, dry_run: bool = False) -> ProviderAdapter:
    """Instantiate the adapter described by ``config``."""
    channel = Channel(config.channel)

    if dry_run or config.kind == "simulation":
        return SimulatedProvider(config.name, channel, timeout_seconds=config.timeout_seconds)

    if config.kind == "http":
        if not config.endpoint:
            raise ValueError(f"Provider {config.name} of kind 'http' needs an endpoint")
        return HttpProvider(
            config.name,
            channel,
            config.endpoint,
            api_key=config.api_key,
            sender=config.sender,
            timeout_seconds=config.timeout_seconds or 30.0,
        )

    raise ValueError(f"Unknown provider kind: {config.kind}")
