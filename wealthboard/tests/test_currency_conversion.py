import unittest
from decimal import Decimal
from unittest import mock

from wealthboard.currency_conversion import (
    CompositeRateProvider,
    ExchangeRateApiProvider,
    MissingRateError,
    RateProviderUnavailable,
    StaticRateProvider,
    convert_amount,
    quantize_money,
    validate_supported_currency,
)
from wealthboard.errors import ValidationError


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = {
            "USD/AUD": Decimal("1.5"),
            "NZD/AUD": Decimal("0.9"),
        }

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(Decimal("12.50"), "USD", "USD", self.rates)

        self.assertEqual(amount, Decimal("12.50"))

    def test_same_currency_ignores_missing_rates(self) -> None:
        amount = convert_amount(Decimal("7.125"), "NZD", "NZD", {})

        self.assertEqual(amount, Decimal("7.13"))

    def test_converts_foreign_to_aud(self) -> None:
        amount = convert_amount(Decimal("100"), "USD", "AUD", self.rates)

        self.assertEqual(amount, Decimal("150.00"))

    def test_converts_aud_to_foreign(self) -> None:
        amount = convert_amount(Decimal("150"), "AUD", "USD", self.rates)

        self.assertEqual(amount, Decimal("100.00"))

    def test_cross_conversion_pivots_through_aud(self) -> None:
        amount = convert_amount(Decimal("100"), "USD", "NZD", self.rates)

        self.assertEqual(amount, Decimal("166.67"))

    def test_accounting_precision_keeps_four_places(self) -> None:
        amount = convert_amount(Decimal("100"), "USD", "NZD", self.rates, places=4)

        self.assertEqual(amount, Decimal("166.6667"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_amount(Decimal("10"), " usd ", "aud", self.rates)

        self.assertEqual(amount, Decimal("15.00"))

    def test_missing_rate_raises(self) -> None:
        with self.assertRaises(MissingRateError) as ctx:
            convert_amount(Decimal("5"), "USD", "AUD", {"NZD/AUD": Decimal("0.9")})

        self.assertEqual(ctx.exception.currency, "USD")
        self.assertIsInstance(ctx.exception, ValidationError)

    def test_zero_rate_is_treated_as_missing(self) -> None:
        with self.assertRaises(MissingRateError):
            convert_amount(Decimal("5"), "USD", "AUD", {"USD/AUD": Decimal("0")})

    def test_rounding_is_half_up(self) -> None:
        self.assertEqual(quantize_money(Decimal("0.125")), Decimal("0.13"))
        self.assertEqual(quantize_money(Decimal("0.00005"), 4), Decimal("0.0001"))

    def test_round_trip_returns_original_amount(self) -> None:
        rates = {"USD/AUD": Decimal("1.53"), "NZD/AUD": Decimal("0.91")}
        amount = Decimal("1234.56")
        for source in ("AUD", "USD", "NZD"):
            for target in ("AUD", "USD", "NZD"):
                there = convert_amount(amount, source, target, rates, places=4)
                back = convert_amount(there, target, source, rates, places=4)

                self.assertAlmostEqual(back, amount, delta=Decimal("0.01"), msg=f"{source}->{target}")

    def test_unsupported_currency_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_supported_currency("EUR")

        self.assertEqual(ctx.exception.field, "currency")


class RateProviderTests(unittest.TestCase):
    def test_static_provider_defaults(self) -> None:
        rates = StaticRateProvider().get_rates()

        self.assertEqual(rates["USD/AUD"], Decimal("1.53"))
        self.assertEqual(rates["NZD/AUD"], Decimal("0.91"))

    def test_composite_falls_back_when_primary_unavailable(self) -> None:
        class FailingProvider:
            def get_rates(self):
                raise RateProviderUnavailable("down")

        fallback = StaticRateProvider(rates={"USD/AUD": Decimal("2")})
        provider = CompositeRateProvider(primary=FailingProvider(), fallback=fallback)

        with self.assertLogs("wealthboard.currency_conversion", level="WARNING"):
            rates = provider.get_rates()

        self.assertEqual(rates, {"USD/AUD": Decimal("2")})

    def test_exchange_rate_api_inverts_and_caches(self) -> None:
        provider = ExchangeRateApiProvider()
        parsed = {"USD/AUD": Decimal("1.6"), "NZD/AUD": Decimal("0.9")}

        with mock.patch.object(provider, "_fetch_rates", return_value=parsed) as fetch:
            first = provider.get_rates()
            second = provider.get_rates()

        self.assertEqual(first, parsed)
        self.assertEqual(second, parsed)
        fetch.assert_called_once()

    def test_exchange_rate_api_parses_aud_quotes(self) -> None:
        provider = ExchangeRateApiProvider()
        body = b'{"result": "success", "rates": {"USD": 0.625, "NZD": 1.25}}'
        response = mock.MagicMock()
        response.__enter__.return_value = response
        response.read.return_value = body

        with mock.patch("wealthboard.currency_conversion.urlopen", return_value=response):
            rates = provider.get_rates()

        self.assertEqual(rates["USD/AUD"], Decimal("1.6"))
        self.assertEqual(rates["NZD/AUD"], Decimal("0.8"))

    def test_exchange_rate_api_error_payload_raises(self) -> None:
        provider = ExchangeRateApiProvider(api_key="key")
        response = mock.MagicMock()
        response.__enter__.return_value = response
        response.read.return_value = b'{"result": "error", "error-type": "invalid-key"}'

        with mock.patch("wealthboard.currency_conversion.urlopen", return_value=response):
            with self.assertRaises(RateProviderUnavailable):
                provider.get_rates()


if __name__ == "__main__":
    unittest.main()
