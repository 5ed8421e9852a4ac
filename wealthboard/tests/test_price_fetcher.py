import unittest
from decimal import Decimal
from unittest import mock
from urllib.error import HTTPError

from wealthboard.price_fetcher import (
    PriceFetchError,
    YahooChartFetcher,
    normalize_symbol,
    parse_chart_payload,
)


class NormalizeSymbolTests(unittest.TestCase):
    def test_exchange_suffixes(self) -> None:
        self.assertEqual(normalize_symbol("vas", "asx"), "VAS.AX")
        self.assertEqual(normalize_symbol("AIR", "NZX"), "AIR.NZ")
        self.assertEqual(normalize_symbol("AAPL", "NASDAQ"), "AAPL")

    def test_existing_suffix_is_kept(self) -> None:
        self.assertEqual(normalize_symbol("VAS.AX", "NZX"), "VAS.AX")


class ParseChartPayloadTests(unittest.TestCase):
    def test_reads_price_and_daily_change(self) -> None:
        payload = {
            "chart": {
                "result": [
                    {"meta": {"regularMarketPrice": 105.5, "currency": "AUD", "chartPreviousClose": 100}}
                ]
            }
        }

        result = parse_chart_payload(payload, "VAS.AX")

        self.assertEqual(result.price, Decimal("105.5"))
        self.assertEqual(result.currency, "AUD")
        self.assertEqual(result.change_absolute, Decimal("5.5"))
        self.assertEqual(result.change_percent, Decimal("5.5"))

    def test_unsupported_quote_currency_raises(self) -> None:
        for currency in ("GBP", "GBp"):
            payload = {"chart": {"result": [{"meta": {"regularMarketPrice": 250, "currency": currency}}]}}

            with self.assertRaises(PriceFetchError) as ctx:
                parse_chart_payload(payload, "VOD.L")

            self.assertIn(currency, str(ctx.exception))

    def test_missing_result_raises(self) -> None:
        with self.assertRaises(PriceFetchError):
            parse_chart_payload({"chart": {"result": None}}, "NOPE")

    def test_missing_price_raises(self) -> None:
        payload = {"chart": {"result": [{"meta": {"currency": "USD"}}]}}

        with self.assertRaises(PriceFetchError) as ctx:
            parse_chart_payload(payload, "AAPL")

        self.assertEqual(ctx.exception.symbol, "AAPL")

    def test_not_found_is_reported_as_invalid_symbol(self) -> None:
        error = HTTPError("https://example.invalid", 404, "Not Found", None, None)

        with mock.patch("wealthboard.price_fetcher.urlopen", side_effect=error):
            with self.assertRaises(PriceFetchError) as ctx:
                YahooChartFetcher().fetch("ZZZ", "ASX")

        self.assertIn("ZZZ.AX", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
