"""
Expense-Split Calculator

Pure function: computes how a shared expense is divided between
household members. No database access, no side effects.

ROUNDING POLICY (largest remainder):
1. Compute every member's exact share.
2. Floor each share to the cent.
3. Hand the leftover cents out one at a time, largest fractional
   remainder first. Ties go to the member listed first.

The shares therefore always add up to the expense amount exactly, and
the same inputs always give the same cents to the same members.

Custom splits are never corrected: if they don't add up to the amount,
the calculator refuses them.
"""

from decimal import ROUND_DOWN, Decimal
from typing import Optional, Sequence

from monterico.errors import SplitMismatchError, ValidationError
from monterico.models.ledger import (
    CENT,
    CustomSplit,
    SplitParticipant,
    SplitShare,
    SplitType,
    quantize_money,
)


def _largest_remainder(
    amount: Decimal,
    weights: Sequence[Decimal],
) -> list[Decimal]:
    total_weight = sum(weights, Decimal("0"))
    exact = [amount * w / total_weight for w in weights]
    floored = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]

    leftover_cents = int((amount - sum(floored, Decimal("0"))) / CENT)
    # Stable sort keeps list order among equal remainders
    order = sorted(
        range(len(weights)),
        key=lambda i: exact[i] - floored[i],
        reverse=True,
    )
    for i in order[:leftover_cents]:
        floored[i] += CENT
    return floored


def calculate_splits(
    amount: Decimal,
    policy: SplitType,
    participants: Sequence[SplitParticipant],
    payer_id: str,
    custom_splits: Optional[Sequence[CustomSplit]] = None,
) -> list[SplitShare]:
    """
    Divide an expense amount between participants.

    Args:
        amount: Expense total (> 0)
        policy: equal, ratio or custom
        participants: Active members, in display order
        payer_id: Member who paid; their own share is marked paid
        custom_splits: Required for the custom policy

    Returns:
        One share per participant (or per custom split), summing to amount

    Raises:
        ValidationError: No participants, or all ratios are zero
        SplitMismatchError: Custom amounts don't add up to the total
    """
    amount = quantize_money(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")

    if policy == SplitType.CUSTOM:
        if not custom_splits:
            raise ValidationError("Custom splits are required for a custom split")
        member_ids = [split.member_id for split in custom_splits]
        if len(set(member_ids)) != len(member_ids):
            raise ValidationError("A member appears more than once in the custom splits")
        shares = [
            SplitShare(
                member_id=split.member_id,
                amount=quantize_money(split.amount),
                paid=split.member_id == payer_id,
            )
            for split in custom_splits
        ]
        total = sum((s.amount for s in shares), Decimal("0"))
        if total != amount:
            raise SplitMismatchError(
                f"Custom splits total {total} but the expense amount is {amount}"
            )
        return shares

    if not participants:
        raise ValidationError("No active household members")

    if policy == SplitType.EQUAL:
        weights = [Decimal("1")] * len(participants)
    elif policy == SplitType.RATIO:
        weights = [Decimal(p.ratio) for p in participants]
        if sum(weights, Decimal("0")) == 0:
            raise ValidationError("Split ratios add up to zero")
    else:
        raise ValidationError(f"Unknown split type: {policy}")

    amounts = _largest_remainder(amount, weights)
    return [
        SplitShare(
            member_id=p.member_id,
            amount=share,
            paid=p.member_id == payer_id,
        )
        for p, share in zip(participants, amounts)
    ]
