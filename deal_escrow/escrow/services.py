from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone
from django.utils.crypto import get_random_string

from deals.models import Deal, Milestone
from deals.notifications import notify
from deals.splits import quantize_money
from payments.models import PayoutRecord
from payments.services import PaymentService
from .exceptions import (
    AlreadyFundedError,
    AlreadyReleasedError,
    AuthorizationError,
    EscrowValidationError,
    ExternalGatewayError,
    NotFundedError,
    ReleaseNotEligibleError,
    StateConflictError,
)
from .models import LedgerEntry

logger = logging.getLogger(__name__)

MANUAL = LedgerEntry.ReleaseType.MANUAL
AUTOMATIC = LedgerEntry.ReleaseType.AUTOMATIC
DISPUTE_RESOLUTION = LedgerEntry.ReleaseType.DISPUTE_RESOLUTION

AUTO_RELEASE_STATES = (Milestone.State.FUNDED, Milestone.State.APPROVED)


@dataclass(frozen=True)
class ReleaseRules:
    """
    Tunable release policy, built once per engine.

    Defaults come from settings.ESCROW_RELEASE_RULES; tests and alternate
    deployments pass their own instance.
    """
    grace_period_days: int = 7
    high_value_threshold: Decimal = Decimal('5000')
    high_value_grace_days: int = 14
    release_on_approval: bool = True
    payee_release_after_auto_date: bool = True

    @classmethod
    def from_settings(cls):
        return cls(**getattr(settings, 'ESCROW_RELEASE_RULES', {}))

    def grace_period_for(self, deal):
        if deal.auto_release_days is not None:
            return timedelta(days=deal.auto_release_days)
        if deal.total_amount > self.high_value_threshold:
            return timedelta(days=self.high_value_grace_days)
        return timedelta(days=self.grace_period_days)


@dataclass(frozen=True)
class ReleaseInstruction:
    """
    What a dispute resolution asks the engine to do with a milestone's escrow.

    `action` applies to `amount` (everything still escrowed when None);
    whatever is left goes to `remainder`.
    """
    RELEASE = 'release'
    REFUND = 'refund'

    action: str
    amount: Decimal = None
    remainder: str = None
    final_state: str = None
    reason: str = ''
    dispute_id: int = None


@dataclass(frozen=True)
class ReleaseDecision:
    eligible: bool
    reason: str = ''

    def __bool__(self):
        return self.eligible


@dataclass
class _Leg:
    action: str
    amount: Decimal
    entry: LedgerEntry = None
    reference: str = ''
    extra: dict = field(default_factory=dict)


class ReleaseEngine:
    """
    The single path for moving escrowed money out of the ledger.

    Manual releases, the sweeper and dispute resolutions all end up here.
    Every money-moving call locks the milestone row, re-reads the ledger and
    claims the escrowed entry with a conditional update before the gateway is
    called, so two concurrent releases of one milestone move money once.
    """

    def __init__(self, rules=None, payment_service=None):
        self.rules = rules or ReleaseRules.from_settings()
        self.payment_service = payment_service or PaymentService()

    # Eligibility

    def check_eligibility(self, milestone, release_type, actor=None, now=None, instruction=None):
        """Decide whether `milestone` may be released now by `actor` via `release_type`."""
        now = now or timezone.now()

        if milestone.is_closed:
            return ReleaseDecision(False, f"Milestone is already {milestone.state}.")

        if release_type == DISPUTE_RESOLUTION:
            if instruction is None or instruction.dispute_id is None:
                return ReleaseDecision(False, "Dispute releases require a resolution instruction.")
            if milestone.state not in Milestone.ESCROWED_STATES + (Milestone.State.DISPUTED,):
                return ReleaseDecision(False, "Milestone has not been funded.")
            return ReleaseDecision(True)

        if milestone.dispute_flag or milestone.state == Milestone.State.DISPUTED:
            return ReleaseDecision(False, "Milestone has an active dispute.")
        if milestone.state not in Milestone.ESCROWED_STATES:
            return ReleaseDecision(False, "Milestone has not been funded.")

        auto_date_passed = milestone.auto_release_at is not None and now >= milestone.auto_release_at

        if release_type == AUTOMATIC:
            if milestone.state not in AUTO_RELEASE_STATES:
                return ReleaseDecision(False, f"Milestone in state '{milestone.state}' is not auto-released.")
            if milestone.auto_release_at is None:
                return ReleaseDecision(False, "No auto-release date set.")
            if not auto_date_passed:
                return ReleaseDecision(False, "Auto-release date not reached.")
            if milestone.deal.has_open_disputes():
                return ReleaseDecision(False, "Deal has an open dispute.")
            return ReleaseDecision(True)

        if release_type == MANUAL:
            role = milestone.deal.role_of(actor)
            if role == 'payer':
                return ReleaseDecision(True)
            if role == 'payee':
                if self.rules.payee_release_after_auto_date and auto_date_passed:
                    return ReleaseDecision(True)
                return ReleaseDecision(False, "The payee can release funds only after the auto-release date.")
            return ReleaseDecision(False, "Only the deal payer or payee can release funds.")

        return ReleaseDecision(False, f"Unknown release type '{release_type}'.")

    def auto_release_time(self, milestone, now=None):
        return (now or timezone.now()) + self.rules.grace_period_for(milestone.deal)

    # Money movement

    def release(self, milestone, release_type, actor=None, instruction=None, now=None):
        """
        Release escrowed funds for `milestone` to the payee.

        Idempotent: releasing an already-released milestone is a no-op success.

        Raises:
            NotFundedError: nothing was ever escrowed
            AlreadyReleasedError: the escrow was refunded or is being refunded
            ReleaseNotEligibleError: the eligibility guard failed
            StateConflictError: another request is settling the escrow
            ExternalGatewayError: the transfer failed, nothing persisted
        """
        now = now or timezone.now()
        if release_type == MANUAL and milestone.deal.role_of(actor) not in ('payer', 'payee'):
            raise AuthorizationError("Only the deal payer or payee can release funds.")

        with transaction.atomic():
            milestone = self._lock(milestone)
            entry = self._escrowed_entry(milestone)
            if entry is None:
                return self._already_settled(milestone)

            decision = self.check_eligibility(milestone, release_type, actor, now=now, instruction=instruction)
            if not decision:
                raise ReleaseNotEligibleError(decision.reason)

            legs = self._plan_legs(entry, instruction or ReleaseInstruction(action=ReleaseInstruction.RELEASE))
            final_state = (
                instruction.final_state if instruction and instruction.final_state
                else Milestone.State.COMPLETED
            )
            reason = (instruction.reason if instruction else '') or f"{release_type} release"
            result = self._settle(milestone, entry, legs, release_type, reason, final_state, now)

        self._after_settle(milestone, result)
        return result

    def refund(self, milestone, instruction, actor=None, now=None):
        """
        Move escrowed funds for `milestone` back towards the payer.

        Entries go to `refund_pending` inside the locked block; the gateway
        refund is attempted after that block has been written.
        """
        now = now or timezone.now()
        if instruction is None or instruction.dispute_id is None:
            if actor is None or not actor.is_mediator:
                raise AuthorizationError("Refunds are issued through dispute resolution.")

        with transaction.atomic():
            milestone = self._lock(milestone)
            entry = self._escrowed_entry(milestone)
            if entry is None:
                entries = milestone.ledger_entries.all()
                if not entries.exists():
                    raise NotFundedError()
                if entries.filter(status=LedgerEntry.Status.COMPLETED).exists():
                    raise AlreadyReleasedError("Escrowed funds for this milestone were already released.")
                logger.info(f"Milestone {milestone.id} already refunded; nothing to do")
                return self._result(milestone, legs=[], already_settled=True)

            legs = self._plan_legs(entry, instruction)
            final_state = instruction.final_state or (
                Milestone.State.COMPLETED
                if any(leg.action == ReleaseInstruction.RELEASE for leg in legs)
                else Milestone.State.REFUNDED
            )
            result = self._settle(
                milestone, entry, legs, DISPUTE_RESOLUTION, instruction.reason or "Refund", final_state, now,
            )

        self._after_settle(milestone, result)
        return result

    def execute(self, milestone, instruction, actor=None):
        """Apply a dispute ReleaseInstruction through the release or refund path."""
        if instruction.action == ReleaseInstruction.RELEASE:
            return self.release(milestone, DISPUTE_RESOLUTION, actor, instruction=instruction)
        if instruction.action == ReleaseInstruction.REFUND:
            return self.refund(milestone, instruction, actor)
        raise EscrowValidationError(f"Unsupported instruction '{instruction.action}'.")

    def settle_refund(self, entry):
        """
        Ask the gateway to return a `refund_pending` entry to the payer.

        Returns True once the entry is `refunded`. Gateway failures are logged
        and leave the entry pending for a later retry.
        """
        if entry.status != LedgerEntry.Status.REFUND_PENDING:
            return entry.status == LedgerEntry.Status.REFUNDED

        result = self.payment_service.refund(
            provider_name=entry.provider or None,
            provider_transaction_id=entry.transaction_reference,
            amount=entry.amount,
            reason=entry.refund_reason or "Escrow refund",
        )
        if result.get('status') != 'success':
            logger.error(
                f"Refund for ledger entry {entry.id} failed: {result.get('message') or result.get('error')}"
            )
            return False

        with transaction.atomic():
            updated = LedgerEntry.objects.filter(
                pk=entry.pk, status=LedgerEntry.Status.REFUND_PENDING,
            ).update(
                status=LedgerEntry.Status.REFUNDED,
                refunded_at=timezone.now(),
                refund_reference=result.get('transaction_id') or '',
            )
            if not updated:
                logger.warning(f"Ledger entry {entry.id} left refund_pending before the refund was recorded")
                return False
            entry.refresh_from_db()
            PayoutRecord.objects.create(
                deal_id=entry.deal_id,
                milestone_id=entry.milestone_id,
                ledger_entry=entry,
                payer_id=entry.deal.payer_id,
                record_type='refund',
                amount=entry.amount,
                currency=entry.currency,
                provider=result.get('provider', entry.provider),
                provider_transaction_id=result.get('transaction_id') or '',
            )

        logger.info(f"Ledger entry {entry.id} refunded ({entry.amount} {entry.currency})")
        return True

    # Internals

    def _lock(self, milestone):
        return Milestone.objects.select_for_update().get(pk=milestone.pk)

    def _escrowed_entry(self, milestone):
        return LedgerEntry.objects.filter(milestone=milestone, status=LedgerEntry.Status.ESCROWED).first()

    def _already_settled(self, milestone):
        entries = milestone.ledger_entries.all()
        if not entries.exists():
            raise NotFundedError()
        if entries.filter(status=LedgerEntry.Status.COMPLETED).exists():
            logger.info(f"Milestone {milestone.id} already released; nothing to do")
            return self._result(milestone, legs=[], already_settled=True)
        raise AlreadyReleasedError()

    def _plan_legs(self, entry, instruction):
        """Split the escrowed entry into the action leg and the remainder leg."""
        amount = entry.amount if instruction.amount is None else quantize_money(instruction.amount, entry.currency)
        if amount <= 0 or amount > entry.amount:
            raise EscrowValidationError(
                f"Amount must be greater than zero and at most the escrowed {entry.amount}."
            )

        legs = [_Leg(action=instruction.action, amount=amount)]
        remaining = entry.amount - amount
        if remaining > 0:
            if instruction.remainder not in (ReleaseInstruction.RELEASE, ReleaseInstruction.REFUND):
                raise EscrowValidationError("A partial amount needs a release or refund remainder.")
            legs.append(_Leg(action=instruction.remainder, amount=remaining))
        return legs

    def _settle(self, milestone, entry, legs, release_type, reason, final_state, now):
        deal = milestone.deal
        self._claim_entry(entry)

        # A gateway failure rolls the claim back with the rest of the block.
        for leg in legs:
            if leg.action != ReleaseInstruction.RELEASE:
                continue
            transfer = self.payment_service.transfer_to_payee(
                payee=deal.payee,
                amount=leg.amount,
                currency=entry.currency,
                provider_name=entry.provider or None,
                metadata={'deal_id': deal.id, 'milestone_id': milestone.id, 'ledger_entry_id': entry.id},
            )
            if transfer.get('status') != 'success':
                logger.error(f"Transfer for milestone {milestone.id} failed: {transfer.get('message')}")
                raise ExternalGatewayError(transfer.get('message') or 'Transfer failed')
            leg.reference = transfer.get('transaction_id') or ''
            leg.extra['provider'] = transfer.get('provider', entry.provider)

        for index, leg in enumerate(legs):
            changes = self._closing_fields(leg, release_type, reason, now)
            if index == len(legs) - 1:
                leg.entry = entry
                self._close_entry(entry, changes)
            else:
                leg.entry = self._split_entry(entry, leg.amount, changes)

            if leg.action == ReleaseInstruction.RELEASE:
                PayoutRecord.objects.create(
                    deal=deal,
                    milestone=milestone,
                    ledger_entry=leg.entry,
                    payer_id=deal.payer_id,
                    record_type='release',
                    amount=leg.amount,
                    currency=entry.currency,
                    provider=leg.extra.get('provider', ''),
                    provider_transaction_id=leg.reference,
                )

        milestone.transition_to(final_state)
        milestone.dispute_flag = False
        milestone.save()
        deal.settle_status()

        logger.info(
            f"Milestone {milestone.id} settled via {release_type}: "
            + ", ".join(f"{leg.action} {leg.amount}" for leg in legs)
        )
        return self._result(milestone, legs=legs)

    def _claim_entry(self, entry):
        """
        Mark `entry` as being settled by this request.

        The conditional update is the write that serializes concurrent
        settlements, including on backends that ignore select_for_update.
        Only the request whose update changed a row may call the gateway.
        """
        token = get_random_string(32)
        claimed = LedgerEntry.objects.filter(
            pk=entry.pk, status=LedgerEntry.Status.ESCROWED, claim_token='',
        ).update(claim_token=token)
        if not claimed:
            raise StateConflictError("Escrowed funds for this milestone are already being settled.")
        entry.claim_token = token

    def _split_entry(self, entry, amount, changes):
        """Carve `amount` off an escrowed entry into a new, already closed entry."""
        updated = LedgerEntry.objects.filter(
            pk=entry.pk, status=LedgerEntry.Status.ESCROWED, amount=entry.amount,
            claim_token=entry.claim_token,
        ).update(amount=F('amount') - amount)
        if not updated:
            raise StateConflictError("Escrowed entry changed while it was being split.")
        entry.amount = entry.amount - amount

        return LedgerEntry.objects.create(
            deal_id=entry.deal_id,
            milestone_id=entry.milestone_id,
            amount=amount,
            currency=entry.currency,
            provider=entry.provider,
            transaction_reference=entry.transaction_reference,
            split_from=entry,
            **changes,
        )

    def _closing_fields(self, leg, release_type, reason, now):
        if leg.action == ReleaseInstruction.RELEASE:
            return {
                'status': LedgerEntry.Status.COMPLETED,
                'released_at': now,
                'release_type': release_type,
                'release_reason': reason[:255],
                'transfer_reference': leg.reference,
            }
        return {
            'status': LedgerEntry.Status.REFUND_PENDING,
            'refund_requested_at': now,
            'refund_reason': reason[:255],
        }

    def _close_entry(self, entry, changes):
        updated = LedgerEntry.objects.filter(
            pk=entry.pk, status=LedgerEntry.Status.ESCROWED, claim_token=entry.claim_token,
        ).update(**changes)
        if not updated:
            raise AlreadyReleasedError("Escrowed funds were settled by a concurrent request.")
        for key, value in changes.items():
            setattr(entry, key, value)

    def _result(self, milestone, legs, already_settled=False):
        released = sum((leg.amount for leg in legs if leg.action == ReleaseInstruction.RELEASE), Decimal('0'))
        refunded = sum((leg.amount for leg in legs if leg.action == ReleaseInstruction.REFUND), Decimal('0'))
        return {
            'status': 'success',
            'already_released': already_settled,
            'milestone_id': milestone.id,
            'milestone_state': milestone.state,
            'deal_status': milestone.deal.status,
            'released_amount': str(released),
            'refund_amount': str(refunded),
            'ledger_entry_ids': [leg.entry.id for leg in legs if leg.entry is not None],
            'refund_entry_ids': [
                leg.entry.id for leg in legs
                if leg.entry is not None and leg.action == ReleaseInstruction.REFUND
            ],
        }

    def _after_settle(self, milestone, result):
        if result.get('already_released'):
            return

        for entry in LedgerEntry.objects.filter(pk__in=result['refund_entry_ids']).select_related('deal'):
            self.settle_refund(entry)

        deal = Deal.objects.select_related('payer', 'payee').get(pk=milestone.deal_id)
        payload = {
            'deal': deal.title,
            'milestone': milestone.title,
            'released': result['released_amount'],
            'refunded': result['refund_amount'],
        }
        if Decimal(result['released_amount']) > 0:
            notify(deal.payee, 'milestone_released', payload)
        if Decimal(result['refund_amount']) > 0:
            notify(deal.payer, 'milestone_refunded', payload)
        if deal.status == Deal.Status.COMPLETED:
            for user in (deal.payer, deal.payee):
                notify(user, 'deal_completed', {'deal': deal.title})


class FundingService:
    """
    Captures a milestone's money from the payer and records it as escrowed.
    """

    def __init__(self, payment_service=None, fee_rate=None):
        self.payment_service = payment_service or PaymentService()
        self.fee_rate = Decimal(str(settings.PLATFORM_FEE_RATE if fee_rate is None else fee_rate))

    def quote(self, milestone):
        currency = milestone.deal.currency
        escrow_amount = milestone.payable_amount
        fee_amount = quantize_money(escrow_amount * self.fee_rate, currency)
        return {
            'escrow_amount': escrow_amount,
            'fee_amount': fee_amount,
            'total_charge': escrow_amount + fee_amount,
            'currency': currency,
        }

    def fund(self, milestone, payment_method, actor):
        """
        Charge the payer for `milestone` and hold the money in escrow.

        The milestone is claimed before the gateway is charged, so a second
        concurrent request fails before any capture. Only on gateway success
        are the ledger entry and payout record written, all in one transaction.
        """
        deal = milestone.deal
        if actor is None or actor.id != deal.payer_id:
            raise AuthorizationError("Only the deal payer can fund a milestone.")
        if payment_method.user_id != actor.id:
            raise AuthorizationError("Payment method does not belong to the payer.")

        with transaction.atomic():
            milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
            if milestone.state != Milestone.State.PENDING:
                raise AlreadyFundedError(f"Milestone {milestone.order} is '{milestone.state}', not pending.")
            deal = Deal.objects.select_for_update().get(pk=milestone.deal_id)
            if deal.status in (Deal.Status.COMPLETED, Deal.Status.CANCELLED):
                raise StateConflictError(f"Cannot fund a milestone of a {deal.status} deal.")

            # Claim the pending milestone before charging; a failed capture rolls it back.
            claim = f"claim:{get_random_string(24)}"
            claimed = Milestone.objects.filter(
                pk=milestone.pk, state=Milestone.State.PENDING, funding_reference='',
            ).update(funding_reference=claim)
            if not claimed:
                raise AlreadyFundedError(f"Milestone {milestone.order} is already being funded.")

            quote = self.quote(milestone)
            capture = self.payment_service.capture(
                instrument=payment_method,
                amount=quote['total_charge'],
                currency=deal.currency,
                metadata={'deal_id': deal.id, 'milestone_id': milestone.id, 'milestone_order': milestone.order},
            )
            if capture.get('status') != 'success':
                logger.error(f"Funding capture for milestone {milestone.id} failed: {capture.get('message')}")
                raise ExternalGatewayError(capture.get('message') or 'Payment capture failed')

            tx_ref = capture.get('transaction_id') or ''
            provider = capture.get('provider') or payment_method.provider

            entry = LedgerEntry.objects.create(
                deal=deal,
                milestone=milestone,
                amount=quote['escrow_amount'],
                currency=deal.currency,
                status=LedgerEntry.Status.ESCROWED,
                provider=provider,
                transaction_reference=tx_ref,
            )
            PayoutRecord.objects.create(
                deal=deal,
                milestone=milestone,
                ledger_entry=entry,
                payer=actor,
                record_type='funding',
                amount=quote['total_charge'],
                fee_amount=quote['fee_amount'],
                currency=deal.currency,
                provider=provider,
                provider_transaction_id=tx_ref,
            )

            milestone.transition_to(Milestone.State.FUNDED)
            milestone.funding_reference = tx_ref
            milestone.save()

            if deal.status == Deal.Status.NEGOTIATING:
                deal.status = Deal.Status.ACTIVE
                deal.save(update_fields=['status', 'updated_at'])

        logger.info(f"Milestone {milestone.id} funded: {quote['escrow_amount']} {deal.currency} escrowed ({tx_ref})")
        notify(deal.payee, 'milestone_funded', {
            'deal': deal.title,
            'milestone': milestone.title,
            'amount': str(quote['escrow_amount']),
        })

        return {
            'status': 'success',
            'message': 'Milestone funded',
            'milestone_id': milestone.id,
            'ledger_entry_id': entry.id,
            'escrow_amount': str(quote['escrow_amount']),
            'fee_amount': str(quote['fee_amount']),
            'total_charge': str(quote['total_charge']),
            'currency': deal.currency,
            'transaction_reference': tx_ref,
        }


def escrow_totals(queryset):
    """Sum ledger amounts per status."""
    totals = {status: Decimal('0') for status, _ in LedgerEntry.Status.choices}
    for row in queryset.values('status').annotate(total=Sum('amount')):
        totals[row['status']] = row['total'] or Decimal('0')
    return totals


def build_deal_summary(deal, user, engine=None, now=None):
    """Milestone states, escrow totals and what `user` may do next on `deal`."""
    engine = engine or ReleaseEngine()
    now = now or timezone.now()
    milestones = []
    for milestone in deal.milestones.all():
        totals = escrow_totals(milestone.ledger_entries.all())
        decision = engine.check_eligibility(milestone, MANUAL, user, now=now)
        milestones.append({
            'id': milestone.id,
            'order': milestone.order,
            'title': milestone.title,
            'state': milestone.state,
            'percentage': str(milestone.percentage),
            'amount': str(milestone.amount),
            'bonus_amount': str(milestone.bonus_amount),
            'auto_release_at': milestone.auto_release_at,
            'dispute_flag': milestone.dispute_flag,
            'escrowed': str(totals[LedgerEntry.Status.ESCROWED]),
            'released': str(totals[LedgerEntry.Status.COMPLETED]),
            'can_release': decision.eligible,
            'release_blocked_reason': '' if decision.eligible else decision.reason,
        })

    totals = escrow_totals(deal.ledger_entries.all())
    return {
        'deal_id': deal.id,
        'title': deal.title,
        'status': deal.status,
        'currency': deal.currency,
        'total_amount': str(deal.total_amount),
        'role': deal.role_of(user),
        'milestones': milestones,
        'escrow': {status: str(amount) for status, amount in totals.items()},
        'completed_milestones': sum(1 for m in milestones if m['state'] == Milestone.State.COMPLETED),
        'total_milestones': len(milestones),
    }
