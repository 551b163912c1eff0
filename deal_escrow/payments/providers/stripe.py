import logging
from decimal import Decimal

import stripe
from django.conf import settings

from deals.splits import minor_unit
from .base import BasePaymentProvider

logger = logging.getLogger(__name__)


def to_minor_units(amount, currency):
    """Stripe expects integer amounts in the currency's smallest unit."""
    return int((Decimal(str(amount)) / minor_unit(currency)).to_integral_value())


class StripeProvider(BasePaymentProvider):
    """
    Stripe implementation of the escrow gateway.
    Captures milestone funding with off-session Payment Intents, pays payees
    through Connect transfers and refunds against the original intent.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        stripe.api_key = settings.STRIPE_SECRET_KEY
        self.default_currency = getattr(settings, 'STRIPE_CURRENCY', 'usd')

    def capture(self, instrument, amount, currency, metadata=None):
        """
        Create and confirm a Payment Intent against the payer's saved payment method.
        """
        metadata = {key: str(value) for key, value in (metadata or {}).items()}
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=(currency or self.default_currency).lower(),
                customer=instrument.customer_reference or None,
                payment_method=instrument.provider_token,
                confirm=True,
                off_session=True,
                metadata={**metadata, 'escrow_funding': 'true'},
                description=f"Escrow funding for deal {metadata.get('deal_id', '')}",
            )

            if intent.status != 'succeeded':
                logger.warning(f"Stripe Payment Intent {intent.id} not captured: {intent.status}")
                return {
                    'status': 'error',
                    'message': f'Payment not completed (status: {intent.status})',
                    'transaction_id': intent.id,
                }

            logger.info(f"Stripe Payment Intent captured: {intent.id}, amount: {amount} {currency}")
            return {
                'status': 'success',
                'transaction_id': intent.id,
                'provider': 'stripe',
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe API error in capture: {str(e)}")
            return {
                'status': 'error',
                'message': getattr(e, 'user_message', None) or 'Payment capture failed',
                'error': str(e)
            }

    def transfer(self, account, amount, currency, metadata=None):
        """
        Transfer released escrow to the payee's connected account.
        """
        metadata = {key: str(value) for key, value in (metadata or {}).items()}
        try:
            transfer = stripe.Transfer.create(
                amount=to_minor_units(amount, currency),
                currency=(currency or self.default_currency).lower(),
                destination=account.account_reference,
                transfer_group=f"deal-{metadata.get('deal_id', '')}",
                metadata={**metadata, 'escrow_release': 'true'},
            )

            logger.info(f"Stripe transfer created: {transfer.id} to {account.account_reference}, amount: {amount}")
            return {
                'status': 'success',
                'transaction_id': transfer.id,
                'provider': 'stripe',
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe transfer error: {str(e)}")
            return {
                'status': 'error',
                'message': 'Transfer failed',
                'error': str(e)
            }

    def refund(self, provider_transaction_id, amount, reason="Escrow refund"):
        """
        Refund (part of) a captured Payment Intent.
        """
        try:
            refund_params = {
                'payment_intent': provider_transaction_id,
                'metadata': {
                    'reason': reason,
                    'escrow_refund': 'true',
                },
            }
            if amount:
                intent = stripe.PaymentIntent.retrieve(provider_transaction_id)
                refund_params['amount'] = to_minor_units(amount, intent.currency.upper())

            refund = stripe.Refund.create(**refund_params)

            logger.info(f"Stripe refund created: {refund.id} for intent {provider_transaction_id}")
            return {
                'status': 'success',
                'transaction_id': refund.id,
                'provider': 'stripe'
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe refund error: {str(e)}")
            return {
                'status': 'error',
                'message': 'Refund failed',
                'error': str(e)
            }
