"""
Test suite for currency module

Tests Money arithmetic, rounding to currency precision and proportional
allocation. All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from sacco_core.currency import (
    Money, Currency, allocate, sum_money, to_money
)


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        """Test Money object creation and rounding"""
        money = Money(Decimal('100.50'), Currency.EUR)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.EUR

        # Half-up rounding to two decimals
        assert Money(Decimal('100.555'), Currency.EUR).amount == Decimal('100.56')
        assert Money(Decimal('100.554'), Currency.EUR).amount == Decimal('100.55')

        # Zero-decimal currency
        assert Money(Decimal('100.5'), Currency.UGX).amount == Decimal('101')

    def test_money_arithmetic(self):
        """Test Money arithmetic operations"""
        a = Money(Decimal('100.50'), Currency.EUR)
        b = Money(Decimal('50.25'), Currency.EUR)

        assert (a + b).amount == Decimal('150.75')
        assert (a - b).amount == Decimal('50.25')
        assert (a * Decimal('2')).amount == Decimal('201.00')
        assert (a / Decimal('2')).amount == Decimal('50.25')
        assert (-a).amount == Decimal('-100.50')

    def test_interest_multiplication_rounds(self):
        """Test that 5% of an awkward principal rounds half up"""
        principal = Money(Decimal('333.33'), Currency.EUR)
        assert (principal * Decimal('0.05')).amount == Decimal('16.67')

    def test_mixed_currency_rejected(self):
        """Test that arithmetic across currencies fails"""
        eur = Money(Decimal('10'), Currency.EUR)
        kes = Money(Decimal('10'), Currency.KES)

        with pytest.raises(ValueError):
            eur + kes
        with pytest.raises(ValueError):
            eur < kes

    def test_comparisons_and_predicates(self):
        """Test ordering and sign predicates"""
        small = Money(Decimal('1.00'), Currency.EUR)
        large = Money(Decimal('2.00'), Currency.EUR)

        assert small < large
        assert large >= small
        assert min(small, large) == small
        assert Money.zero(Currency.EUR).is_zero()
        assert large.is_positive()
        assert (small - large).is_negative()

    def test_to_string(self):
        """Test display formatting"""
        assert Money(Decimal('1234.5'), Currency.EUR).to_string() == "EUR 1,234.50"
        assert Money(Decimal('1234'), Currency.UGX).to_string() == "UGX 1,234"


class TestHelpers:
    """Test module-level money helpers"""

    def test_sum_money_empty(self):
        """Test that summing nothing gives zero in the requested currency"""
        total = sum_money([], Currency.EUR)
        assert total == Money.zero(Currency.EUR)

    def test_to_money_accepts_numbers(self):
        """Test conversion of plain numbers and strings"""
        assert to_money(Decimal('12.5'), Currency.EUR).amount == Decimal('12.50')
        assert to_money("7", Currency.EUR).amount == Decimal('7.00')
        assert to_money(3, Currency.EUR).amount == Decimal('3.00')

    def test_to_money_rejects_floats_and_foreign_currency(self):
        """Test that floats and other currencies are refused"""
        with pytest.raises(TypeError):
            to_money(1.5, Currency.EUR)
        with pytest.raises(ValueError):
            to_money(Money(Decimal('1'), Currency.USD), Currency.EUR)
        with pytest.raises(ValueError):
            to_money("abc", Currency.EUR)


class TestAllocate:
    """Test proportional allocation"""

    def test_equal_split_with_residue(self):
        """Test that a split that does not divide evenly still sums exactly"""
        parts = allocate(Money(Decimal('10.00'), Currency.EUR), [Decimal('1')] * 3)

        assert [p.amount for p in parts] == [Decimal('3.34'), Decimal('3.33'), Decimal('3.33')]
        assert sum_money(parts, Currency.EUR).amount == Decimal('10.00')

    def test_weighted_split_residue_goes_to_largest(self):
        """Test that over-rounding is taken back from the largest weight"""
        parts = allocate(Money(Decimal('12.50'), Currency.EUR), [Decimal('300'), Decimal('100')])

        assert parts[0].amount == Decimal('9.37')
        assert parts[1].amount == Decimal('3.13')

    def test_zero_weights_get_nothing(self):
        """Test that members with zero weight receive zero"""
        parts = allocate(Money(Decimal('5.00'), Currency.EUR), [Decimal('0'), Decimal('2')])
        assert parts[0].is_zero()
        assert parts[1].amount == Decimal('5.00')

    def test_requires_positive_weight(self):
        """Test that all-zero weights are rejected"""
        with pytest.raises(ValueError):
            allocate(Money(Decimal('5.00'), Currency.EUR), [Decimal('0')])
        assert allocate(Money(Decimal('5.00'), Currency.EUR), []) == []
