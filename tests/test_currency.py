"""
Tests for currency codes and the Money type
"""

import pytest
from decimal import Decimal

from contract_billing.currency import Currency, Money, quantize, to_decimal
from contract_billing.exceptions import BillingError, ErrorCategory, InvalidTransition, PaymentDeclined
from contract_billing.installments import InstallmentStatus


class TestCurrency:
    """Test currency lookup and rounding"""

    def test_from_code(self):
        assert Currency.from_code("egp") is Currency.EGP
        assert Currency.EGP.precision == 2
        with pytest.raises(ValueError):
            Currency.from_code("XYZ")

    def test_quantize_rounds_half_up(self):
        assert quantize(Decimal('10.005')) == Decimal('10.01')
        assert quantize(Decimal('10.004')) == Decimal('10.00')

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal("250.50") == Decimal('250.50')


class TestMoney:
    """Test Money arithmetic and minor units"""

    def test_minor_units(self):
        money = Money(Decimal('12.34'), Currency.EGP)

        assert money.to_minor_units() == 1234
        assert Money.from_minor_units(1234, Currency.EGP) == money

    def test_arithmetic(self):
        a = Money(Decimal('100.10'), Currency.USD)
        b = Money(Decimal('0.90'), Currency.USD)

        assert (a + b).amount == Decimal('101.00')
        assert (a - b).amount == Decimal('99.20')
        assert (b * 3).amount == Decimal('2.70')
        assert b < a
        assert Money.zero(Currency.USD).is_zero()

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.USD) + Money(Decimal('1'), Currency.EGP)

    def test_to_string(self):
        assert Money(Decimal('1234567.8'), Currency.EGP).to_string() == "EGP 1,234,567.80"


class TestErrors:
    """Test the structured error representation"""

    def test_business_rule_error(self):
        error = InvalidTransition("installment", "c1_1", InstallmentStatus.PAID, InstallmentStatus.OVERDUE)

        data = error.to_dict()

        assert isinstance(error, BillingError)
        assert data["code"] == "invalid_transition"
        assert data["category"] == "business_rule"
        assert data["details"]["current"] == "paid"

    def test_gateway_decline_is_terminal(self):
        error = PaymentDeclined("Insufficient funds", step="submit_payment", status_code=200)

        assert error.category == ErrorCategory.PROVIDER_DECLINED
        assert error.retryable is False
