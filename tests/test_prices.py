"""USD price lookups."""

import pytest
import requests

from binpilot.config import SOL_MINT
from binpilot.errors import PriceUnavailableError
from binpilot.services.prices import PriceOracle

from conftest import FakeResponse, FakeSession


class Clock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self):
        return self.now


class TestPriceOracle:

    def test_current_response_shape(self):
        session = FakeSession(get=[FakeResponse({SOL_MINT: {'usdPrice': 142.5}})])
        assert PriceOracle(session=session).price(SOL_MINT) == 142.5
        assert session.calls[0][2]['params'] == {"ids": SOL_MINT}

    def test_legacy_response_shape(self):
        session = FakeSession(get=[FakeResponse({'data': {SOL_MINT: {'price': '98.1'}}})])
        assert PriceOracle(session=session).price(SOL_MINT) == 98.1

    def test_api_key_header(self):
        session = FakeSession(get=[FakeResponse({SOL_MINT: {'usdPrice': 1.0}})])
        PriceOracle(api_key="secret", session=session).price(SOL_MINT)
        assert session.calls[0][2]['headers'] == {'x-api-key': "secret"}

    def test_cached_within_ttl(self):
        clock = Clock()
        session = FakeSession(get=[FakeResponse({SOL_MINT: {'usdPrice': 100}}),
                                   FakeResponse({SOL_MINT: {'usdPrice': 120}})])
        oracle = PriceOracle(session=session, clock=clock, ttl=60)

        assert oracle.price(SOL_MINT) == 100
        clock.now += 30
        assert oracle.price(SOL_MINT) == 100
        clock.now += 31
        assert oracle.price(SOL_MINT) == 120
        assert len(session.calls) == 2

    @pytest.mark.parametrize("response", [
        FakeResponse({}),
        FakeResponse({SOL_MINT: {'usdPrice': 0}}),
        FakeResponse({SOL_MINT: {'usdPrice': "n/a"}}),
        FakeResponse({}, status_code=500),
        requests.ConnectionError("down"),
    ])
    def test_unusable_answer_is_none(self, response):
        assert PriceOracle(session=FakeSession(get=[response])).price(SOL_MINT) is None

    def test_failures_are_not_cached(self):
        session = FakeSession(get=[FakeResponse({}), FakeResponse({SOL_MINT: {'usdPrice': 5}})])
        oracle = PriceOracle(session=session)
        assert oracle.price(SOL_MINT) is None
        assert oracle.price(SOL_MINT) == 5

    def test_require_price_raises(self):
        oracle = PriceOracle(session=FakeSession(get=[FakeResponse({})]))
        with pytest.raises(PriceUnavailableError) as exc:
            oracle.require_price(SOL_MINT, context="open")
        assert exc.value.context == "open"
