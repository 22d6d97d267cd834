"""
Tests for the expense-split calculator.

The calculator is pure, so these run without a database.
"""

from decimal import Decimal

import pytest

from monterico.accounting import calculate_splits
from monterico.errors import SplitMismatchError, ValidationError
from monterico.models.ledger import CustomSplit, SplitParticipant, SplitType


def members(*ratios: str) -> list[SplitParticipant]:
    return [
        SplitParticipant(member_id=f"m{i}", ratio=Decimal(r))
        for i, r in enumerate(ratios, start=1)
    ]


class TestEqualSplits:
    """Tests for equal splits."""

    def test_even_amount_splits_evenly(self):
        """Test 100.00 between two members is 50.00 each."""
        shares = calculate_splits(Decimal("100.00"), SplitType.EQUAL, members("0.5", "0.5"), "m1")
        assert [s.amount for s in shares] == [Decimal("50.00"), Decimal("50.00")]

    def test_leftover_cent_goes_to_first_member(self):
        """Test 100.00 between three members gives the extra cent to the first."""
        shares = calculate_splits(
            Decimal("100.00"), SplitType.EQUAL, members("0.3", "0.3", "0.4"), "m2"
        )
        assert [s.amount for s in shares] == [
            Decimal("33.34"),
            Decimal("33.33"),
            Decimal("33.33"),
        ]

    @pytest.mark.parametrize("amount", ["0.01", "0.05", "10.00", "99.99", "1234.57"])
    @pytest.mark.parametrize("count", [1, 2, 3, 7])
    def test_shares_always_add_up(self, amount, count):
        """Test the shares sum to the amount exactly."""
        participants = members(*["0.5"] * count)
        shares = calculate_splits(Decimal(amount), SplitType.EQUAL, participants, "m1")
        assert sum(s.amount for s in shares) == Decimal(amount)
        assert len(shares) == count

    def test_only_payer_share_is_paid(self):
        """Test the payer's own share is marked paid, nobody else's."""
        shares = calculate_splits(Decimal("30.00"), SplitType.EQUAL, members("0.5", "0.5"), "m2")
        paid = {s.member_id: s.paid for s in shares}
        assert paid == {"m1": False, "m2": True}

    def test_no_participants_rejected(self):
        """Test an empty household can't split an expense."""
        with pytest.raises(ValidationError):
            calculate_splits(Decimal("10.00"), SplitType.EQUAL, [], "m1")

    def test_same_input_same_output(self):
        """Test rounding is deterministic."""
        a = calculate_splits(Decimal("10.00"), SplitType.EQUAL, members("1", "1", "1"), "m1")
        b = calculate_splits(Decimal("10.00"), SplitType.EQUAL, members("1", "1", "1"), "m1")
        assert a == b


class TestRatioSplits:
    """Tests for ratio splits."""

    def test_shares_follow_ratios(self):
        """Test 100.00 at 0.7/0.3 is 70.00/30.00."""
        shares = calculate_splits(Decimal("100.00"), SplitType.RATIO, members("0.7", "0.3"), "m1")
        assert [s.amount for s in shares] == [Decimal("70.00"), Decimal("30.00")]

    def test_ratios_are_normalized(self):
        """Test ratios that don't sum to one are used as weights."""
        shares = calculate_splits(Decimal("90.00"), SplitType.RATIO, members("0.2", "0.4"), "m1")
        assert [s.amount for s in shares] == [Decimal("30.00"), Decimal("60.00")]

    def test_largest_remainder_gets_the_cent(self):
        """Test the leftover cent goes to the largest fractional remainder."""
        # exact shares: 3.333.. and 6.666..
        shares = calculate_splits(Decimal("10.00"), SplitType.RATIO, members("0.25", "0.5"), "m1")
        assert [s.amount for s in shares] == [Decimal("3.33"), Decimal("6.67")]
        assert sum(s.amount for s in shares) == Decimal("10.00")

    def test_zero_ratio_member_pays_nothing(self):
        """Test a member with ratio 0 gets a zero share."""
        shares = calculate_splits(Decimal("25.00"), SplitType.RATIO, members("1", "0"), "m1")
        assert [s.amount for s in shares] == [Decimal("25.00"), Decimal("0.00")]

    def test_all_zero_ratios_rejected(self):
        """Test ratios summing to zero are rejected."""
        with pytest.raises(ValidationError):
            calculate_splits(Decimal("25.00"), SplitType.RATIO, members("0", "0"), "m1")


class TestCustomSplits:
    """Tests for custom splits."""

    def test_matching_custom_splits_accepted(self):
        """Test custom amounts that add up are used as given."""
        shares = calculate_splits(
            Decimal("100.00"),
            SplitType.CUSTOM,
            [],
            "a",
            [
                CustomSplit(member_id="a", amount=Decimal("80.00")),
                CustomSplit(member_id="b", amount=Decimal("20.00")),
            ],
        )
        assert [(s.member_id, s.amount, s.paid) for s in shares] == [
            ("a", Decimal("80.00"), True),
            ("b", Decimal("20.00"), False),
        ]

    def test_mismatch_rejected(self):
        """Test custom amounts that don't add up raise SplitMismatchError."""
        with pytest.raises(SplitMismatchError) as exc_info:
            calculate_splits(
                Decimal("100.00"),
                SplitType.CUSTOM,
                [],
                "a",
                [
                    CustomSplit(member_id="a", amount=Decimal("60.00")),
                    CustomSplit(member_id="b", amount=Decimal("30.00")),
                ],
            )
        assert exc_info.value.code == "SPLIT_MISMATCH"

    def test_off_by_one_cent_rejected(self):
        """Test custom splits are never silently corrected."""
        with pytest.raises(SplitMismatchError):
            calculate_splits(
                Decimal("10.00"),
                SplitType.CUSTOM,
                [],
                "a",
                [
                    CustomSplit(member_id="a", amount=Decimal("5.00")),
                    CustomSplit(member_id="b", amount=Decimal("4.99")),
                ],
            )

    def test_missing_custom_splits_rejected(self):
        """Test the custom policy needs splits."""
        with pytest.raises(ValidationError):
            calculate_splits(Decimal("10.00"), SplitType.CUSTOM, [], "a", None)

    def test_duplicate_member_rejected(self):
        """Test a member can't appear twice."""
        with pytest.raises(ValidationError):
            calculate_splits(
                Decimal("10.00"),
                SplitType.CUSTOM,
                [],
                "a",
                [
                    CustomSplit(member_id="a", amount=Decimal("5.00")),
                    CustomSplit(member_id="a", amount=Decimal("5.00")),
                ],
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
