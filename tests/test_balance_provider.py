import json
from decimal import Decimal

import httpx
import pytest

from custody.core.config import Settings
from custody.core.errors import ConfigurationError, ProviderUnavailable
from custody.services.balance_provider import BalanceProvider, build_balance_provider
from custody.services.chain_sources import (
    CoinGeckoPriceSource,
    EsploraChainSource,
    JsonRpcChainSource,
    StaticPriceSource,
)

ETH_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
BTC_ADDRESS = "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"


def _rpc_transport(result=None, *, error=None, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if seen is not None:
            seen.append((str(request.url), payload, dict(request.headers)))
        body = {"jsonrpc": "2.0", "id": payload.get("id")}
        if error is not None:
            body["error"] = error
        else:
            body["result"] = result
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler)


def test_jsonrpc_eth_balance_in_wei():
    seen = []
    source = JsonRpcChainSource(
        "getblock",
        {"ETH": "https://eth.example/rpc"},
        api_key="k-123",
        transport=_rpc_transport(hex(5 * 10**18), seen=seen),
    )
    assert source.get_balance(ETH_ADDRESS, "ETH") == Decimal("5")
    url, payload, headers = seen[0]
    assert url == "https://eth.example/rpc"
    assert payload["method"] == "eth_getBalance"
    assert payload["params"] == [ETH_ADDRESS, "latest"]
    assert headers["x-api-key"] == "k-123"


def test_jsonrpc_token_balance_uses_balance_of():
    seen = []
    source = JsonRpcChainSource("getblock", {"USDT": "https://eth.example/rpc"}, transport=_rpc_transport(hex(1_500_000), seen=seen))
    assert source.get_balance(ETH_ADDRESS, "USDT") == Decimal("1.5")
    _, payload, _ = seen[0]
    call, block = payload["params"]
    assert payload["method"] == "eth_call"
    assert block == "latest"
    assert call["to"] == "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    assert call["data"] == "0x70a08231" + ETH_ADDRESS[2:].lower().rjust(64, "0")


def test_jsonrpc_btc_confirmed_satoshi():
    source = JsonRpcChainSource(
        "getblock",
        {"btc": "https://btc.example/rpc"},
        transport=_rpc_transport({"confirmed": 150_000_000, "unconfirmed": 5}),
    )
    assert source.supports("BTC")
    assert source.get_balance(BTC_ADDRESS, "BTC") == Decimal("1.5")


def test_esplora_funded_minus_spent():
    def handler(request):
        assert request.url.path == f"/api/address/{BTC_ADDRESS}"
        return httpx.Response(200, json={"chain_stats": {"funded_txo_sum": 300_000, "spent_txo_sum": 100_000}})

    source = EsploraChainSource("https://blockstream.example/api/", transport=httpx.MockTransport(handler))
    assert source.get_balance(BTC_ADDRESS, "BTC") == Decimal("0.002")
    assert not source.supports("ETH")


def test_falls_back_to_next_source_on_http_error():
    failing = JsonRpcChainSource("primary", {"ETH": "https://a.example"}, transport=_rpc_transport(None, status_code=502))
    working = JsonRpcChainSource("secondary", {"ETH": "https://b.example"}, transport=_rpc_transport("0x0de0b6b3a7640000"))
    provider = BalanceProvider([failing, working], [], cache_ttl_seconds=0)
    assert provider.get_balance(ETH_ADDRESS, "ETH") == Decimal("1")


@pytest.mark.parametrize(
    "transport",
    [
        _rpc_transport(None, error={"code": -32000, "message": "boom"}),
        _rpc_transport("not-hex"),
        _rpc_transport(None),
        httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
        httpx.MockTransport(lambda request: (_ for _ in ()).throw(httpx.ConnectTimeout("timed out"))),
    ],
)
def test_malformed_or_failed_answers_fall_through(transport):
    bad = JsonRpcChainSource("bad", {"ETH": "https://a.example"}, transport=transport)
    good = JsonRpcChainSource("good", {"ETH": "https://b.example"}, transport=_rpc_transport("0x2"))
    provider = BalanceProvider([bad, good], [], cache_ttl_seconds=0)
    assert provider.get_balance(ETH_ADDRESS, "ETH") == Decimal("2E-18")


def test_all_sources_failing_raises_provider_unavailable():
    sources = [
        JsonRpcChainSource(name, {"ETH": f"https://{name}.example"}, transport=_rpc_transport(None, status_code=503))
        for name in ("a", "b")
    ]
    provider = BalanceProvider(sources, [], cache_ttl_seconds=0)
    with pytest.raises(ProviderUnavailable) as exc_info:
        provider.get_balance(ETH_ADDRESS, "ETH")
    assert len(exc_info.value.errors) == 2


def test_no_source_for_asset():
    source = JsonRpcChainSource("eth-only", {"ETH": "https://a.example"}, transport=_rpc_transport("0x1"))
    provider = BalanceProvider([source], [], cache_ttl_seconds=0)
    with pytest.raises(ProviderUnavailable) as exc_info:
        provider.get_balance(BTC_ADDRESS, "BTC")
    assert exc_info.value.errors == ["no source configured"]


def test_balances_are_cached_for_ttl():
    seen = []
    source = JsonRpcChainSource("getblock", {"ETH": "https://a.example"}, transport=_rpc_transport("0x1", seen=seen))
    provider = BalanceProvider([source], [], cache_ttl_seconds=20)
    provider.get_balance(ETH_ADDRESS, "ETH")
    provider.get_balance(ETH_ADDRESS, "ETH")
    assert len(seen) == 1


def test_cache_disabled_with_zero_ttl():
    seen = []
    source = JsonRpcChainSource("getblock", {"ETH": "https://a.example"}, transport=_rpc_transport("0x1", seen=seen))
    provider = BalanceProvider([source], [], cache_ttl_seconds=0)
    provider.get_balance(ETH_ADDRESS, "ETH")
    provider.get_balance(ETH_ADDRESS, "ETH")
    assert len(seen) == 2


def test_coingecko_price():
    def handler(request):
        assert request.url.path == "/api/v3/simple/price"
        assert request.url.params["ids"] == "bitcoin"
        assert request.headers["x-cg-demo-api-key"] == "demo"
        return httpx.Response(200, json={"bitcoin": {"usd": 61234.5}})

    source = CoinGeckoPriceSource("https://cg.example/api/v3", api_key="demo", transport=httpx.MockTransport(handler))
    provider = BalanceProvider([], [source], cache_ttl_seconds=0)
    assert provider.get_price_usd("BTC") == Decimal("61234.5")


def test_price_falls_back_to_static():
    down = CoinGeckoPriceSource(transport=httpx.MockTransport(lambda request: httpx.Response(429, json={})))
    provider = BalanceProvider([], [down, StaticPriceSource({"USDT": "1"})], cache_ttl_seconds=0)
    assert provider.get_price_usd("USDT") == Decimal("1")


def test_price_unavailable():
    provider = BalanceProvider([], [StaticPriceSource({"ETH": "3000"})], cache_ttl_seconds=0)
    with pytest.raises(ProviderUnavailable):
        provider.get_price_usd("BNB")
    assert provider.get_price_usd("usd") == Decimal("1")


def test_build_balance_provider_from_settings():
    settings = Settings(
        chain_sources=json.dumps(
            [
                {"kind": "jsonrpc", "name": "getblock", "endpoints": {"ETH": "https://eth.example"}, "api_key": "x"},
                {"kind": "esplora", "base_url": "https://blockstream.example/api"},
            ]
        ),
        price_sources='[{"kind": "static", "prices": {"BTC": "60000"}}]',
        provider_cache_ttl_seconds=5,
    )
    provider = build_balance_provider(settings)
    assert [s.name for s in provider.chain_sources] == ["getblock", "esplora"]
    assert provider.cache_ttl_seconds == 5
    assert provider.get_price_usd("BTC") == Decimal("60000")


@pytest.mark.parametrize(
    "chain_sources",
    ['[{"kind": "carrier-pigeon"}]', '[{"kind": "esplora"}]'],
)
def test_build_balance_provider_rejects_bad_config(chain_sources):
    with pytest.raises(ConfigurationError):
        build_balance_provider(Settings(chain_sources=chain_sources))
