import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent after commit whenever a transaction really moves PENDING -> COMPLETED.
# kwargs: transaction
transaction_completed = Signal()


@receiver(transaction_completed)
def payout_on_completion(sender, transaction, **kwargs):
    """Pay out each completed transaction immediately for mentors who opted in to automatic payouts."""
    from accounts.models import MentorProfile
    from billing.services.payouts import PayoutBatcher

    if transaction.mentor_earnings <= 0:
        return
    profile = MentorProfile.objects.filter(user_id=transaction.mentor_id).first()
    if not profile or not profile.auto_payout:
        return
    PayoutBatcher().automatic_payout(transaction)
