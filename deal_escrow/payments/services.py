from django.conf import settings
from .providers import get_payment_provider
from .models import PayoutMethod
import logging

logger = logging.getLogger(__name__)

class PaymentService:
    """
    Provider adapter. This class should NOT create or update ledger/payout records.
    It only resolves accounts and calls the configured payment provider(s).
    """
    def __init__(self, provider_name = None):
        self.default_provider_name = provider_name or getattr(settings, 'PAYMENT_DEFAULT_PROVIDER', None)

    def _get_provider(self, provider_name):
        name = provider_name or self.default_provider_name
        if not name:
            raise ValueError("provider_name is required (no default configured).")
        return get_payment_provider(name), name

    def capture(self, *, instrument, amount, currency, metadata=None):
        provider, resolved_name = self._get_provider(instrument.provider)
        result = provider.capture(instrument, amount, currency, metadata=metadata)
        result.setdefault('provider', resolved_name)
        return result

    def transfer_to_payee(self, *, payee, amount, currency, provider_name=None, metadata=None):
        """
        Transfer funds to the payee's payout account using the specified provider.
        """
        provider, resolved_name = self._get_provider(provider_name)

        account = self.get_payout_method(payee, resolved_name)
        if not account:
            return {
                'status': 'error',
                'message': f'No active {resolved_name} payout method found for payee'
            }

        result = provider.transfer(account, amount, currency, metadata=metadata)
        result.setdefault('provider', resolved_name)
        return result

    def refund(self, *, provider_name, provider_transaction_id, amount=None, reason="Escrow refund"):
        provider, resolved_name = self._get_provider(provider_name)
        result = provider.refund(provider_transaction_id, amount, reason)
        result.setdefault('provider', resolved_name)
        return result

    def get_payout_method(self, payee, provider_name: str):
        """
        Get the payee's preferred active payout method for the given provider.
        """
        return PayoutMethod.objects.filter(
            user=payee,
            provider=provider_name,
            is_active=True,
        ).order_by('-is_default', '-created_at').first()
