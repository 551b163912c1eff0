from django.conf import settings

from .base import BasePaymentProvider
from .stripe import StripeProvider

PROVIDERS = {
    'stripe': StripeProvider,
}


def get_payment_provider(provider_name: str = None, **kwargs) -> BasePaymentProvider:
    """
    Build the gateway adapter registered under `provider_name`.

    Falls back to settings.PAYMENT_DEFAULT_PROVIDER; unknown names raise ValueError.
    """
    name = provider_name or settings.PAYMENT_DEFAULT_PROVIDER
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown payment provider: {name}")
    return provider_class(**kwargs)
