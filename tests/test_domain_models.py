"""
Tests for domain dataclasses and their validation.
"""

import pytest

from app.models.api import ActionName, ReconciliationSource
from app.models.domain import CreditSnapshot, Evidence, PurchaseIntent, SearchResult


class TestCreditSnapshot:
    def test_negative_balances_rejected(self) -> None:
        with pytest.raises(ValueError):
            CreditSnapshot(
                paid_credits=-1,
                free_available_today=False,
                free_pool_remaining=0,
                unit_price_minor=20,
                currency="eur",
            )


class TestPurchaseIntent:
    @pytest.mark.parametrize(
        "overrides",
        [{"quantity": 0}, {"transaction_id": ""}, {"currency": "euro"}, {"device_id": ""}],
    )
    def test_invalid_intent(self, overrides: dict) -> None:
        values = {
            "device_id": "device-1",
            "quantity": 1,
            "transaction_id": "pi_1",
            "received_amount_minor": 20,
            "currency": "eur",
            "source": ReconciliationSource.WEBHOOK,
        }
        values.update(overrides)
        with pytest.raises(ValueError):
            PurchaseIntent(**values)


class TestEvidence:
    def test_text_skips_empty_pages(self) -> None:
        evidence = Evidence(query="q", page_texts=("first", "", "second"))
        assert evidence.text == "first second"

    def test_links_limited(self) -> None:
        results = tuple(SearchResult(title=f"t{i}", url=f"https://e.org/{i}") for i in range(3))
        links = Evidence(query="q", results=results).links(2)
        assert [link.url for link in links] == ["https://e.org/0", "https://e.org/1"]


class TestActionName:
    @pytest.mark.parametrize("raw", ["supportquery", "SUPPORTQUERY", " supportQuery "])
    def test_parse_is_case_insensitive(self, raw: str) -> None:
        assert ActionName.parse(raw) == ActionName.SUPPORT_QUERY

    def test_unknown(self) -> None:
        assert ActionName.parse("refund") is None

    def test_charged_actions(self) -> None:
        assert ActionName.INITIAL.is_charged
        assert ActionName.TRANSCRIBE_AND_EXTRACT.is_charged
        assert not ActionName.CREDITS.is_charged
        assert not ActionName.START_CONVERSATION.is_charged
