from collections.abc import Mapping
from functools import lru_cache

from errors import GatewayRejected
from settings import settings, card_settings, redirect_settings
from .base import GatewayAdapter, GatewayHandle, PaymentEvent, PaymentRequest, Verification
from .card import CardGatewayAdapter, create_card_adapter
from .redirect import RedirectGatewayAdapter, create_redirect_adapter


class GatewayRegistry:
    def __init__(self, adapters: Mapping[str, GatewayAdapter]):
        self.adapters = dict(adapters)

    def get(self, name: str) -> GatewayAdapter:
        adapter = self.adapters.get(name)
        if adapter is None:
            raise GatewayRejected(f'payment method "{name}" is not available')
        return adapter

    async def aclose(self):
        for adapter in self.adapters.values():
            await adapter.client.aclose()

    @classmethod
    def from_settings(cls) -> 'GatewayRegistry':
        factories = {
            'card': lambda: create_card_adapter(card_settings, settings.gateway_call_timeout),
            'redirect': lambda: create_redirect_adapter(redirect_settings, settings.gateway_call_timeout)
        }
        unknown = set(settings.enabled_gateways) - set(factories)
        if unknown:
            raise ValueError(f'unknown gateways in configuration: {", ".join(sorted(unknown))}')

        return cls({name: factories[name]() for name in settings.enabled_gateways})


@lru_cache
def get_gateway_registry() -> GatewayRegistry:
    return GatewayRegistry.from_settings()
