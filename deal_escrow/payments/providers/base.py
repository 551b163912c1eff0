from abc import ABC, abstractmethod

class BasePaymentProvider(ABC):
    """
    Abstract base class for all payment providers.

    Every call is synchronous-with-timeout and returns a dict:
        {'status': 'success' | 'error', 'transaction_id': str, 'message': str, ...}
    Providers never raise for gateway failures; they report them in the dict.
    """

    def __init__(self, **kwargs):
        """Initialize the payment provider with configuration."""
        self.config = kwargs

    @abstractmethod
    def capture(self, instrument, amount, currency, metadata=None):
        """
        Capture `amount` from the payer's saved instrument.

        Args:
            instrument: PaymentMethod of the payer
            amount: Amount to charge (as Decimal)
            currency: ISO currency code
            metadata: Deal/milestone identifiers to attach to the charge

        Returns:
            Dict containing the capture result
        """
        pass

    @abstractmethod
    def transfer(self, account, amount, currency, metadata=None):
        """
        Transfer `amount` to the payee's payout account.

        Args:
            account: PayoutMethod of the payee
            amount: Amount to transfer (as Decimal)
            currency: ISO currency code
            metadata: Deal/milestone identifiers to attach to the transfer

        Returns:
            Dict containing the transfer result
        """
        pass

    @abstractmethod
    def refund(self, provider_transaction_id, amount, reason="Escrow refund"):
        """
        Refund (part of) a previous capture back to the payer.

        Args:
            provider_transaction_id: Original capture transaction ID
            amount: Amount to refund (if None, full refund)

        Returns:
            Dict containing refund response
        """
        pass
