"""Read-only chain balance and USD price backends.

Each backend raises ChainSourceError (or lets httpx errors escape) on any
failure; the fallback policy lives in balance_provider.
"""
import logging
import time
from decimal import Decimal

import httpx

from custody.core.assets import USD, from_minor_units, get_asset

logger = logging.getLogger(__name__)

ERC20_BALANCE_OF = "0x70a08231"


class ChainSourceError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw


def _parse_hex_quantity(value) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ChainSourceError(f"Expected hex quantity, got {value!r}")
    digits = value[2:] or "0"
    try:
        return int(digits, 16)
    except ValueError as exc:
        raise ChainSourceError(f"Malformed hex quantity {value!r}") from exc


def _parse_int(value) -> int:
    if isinstance(value, bool):
        raise ChainSourceError(f"Expected integer amount, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ChainSourceError(f"Expected integer amount, got {value!r}")


class HttpSource:
    name = "http"

    def __init__(self, *, timeout: float = 8.0, transport: httpx.BaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _json(self, method: str, url: str, **kwargs):
        start = time.time()
        with self._client() as client:
            response = client.request(method, url, **kwargs)
        duration_ms = round((time.time() - start) * 1000, 2)
        logger.debug("%s %s status=%s duration=%sms", self.name, method, response.status_code, duration_ms)
        if response.status_code >= 400:
            raise ChainSourceError(
                f"{self.name} returned HTTP {response.status_code}",
                status_code=response.status_code,
                raw=(response.text or "")[:300],
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ChainSourceError(f"{self.name} returned invalid JSON", status_code=response.status_code) from exc


class BalanceSource(HttpSource):
    def supports(self, asset_id: str) -> bool:
        raise NotImplementedError

    def get_balance(self, address: str, asset_id: str) -> Decimal:
        raise NotImplementedError


class JsonRpcChainSource(BalanceSource):
    """GetBlock-style JSON-RPC nodes, one endpoint per asset."""

    def __init__(self, name: str, endpoints: dict[str, str], *, api_key: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.endpoints = {str(k).upper(): v for k, v in (endpoints or {}).items() if v}
        self.api_key = api_key

    def supports(self, asset_id: str) -> bool:
        return asset_id in self.endpoints

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _rpc(self, asset_id: str, method: str, params: list):
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": "getbalance"}
        data = self._json("POST", self.endpoints[asset_id], json=payload, headers=self._headers())
        if not isinstance(data, dict):
            raise ChainSourceError(f"{self.name} returned a non-object RPC response")
        if data.get("error"):
            raise ChainSourceError(f"{self.name} RPC error: {data['error']}")
        if "result" not in data or data["result"] is None:
            raise ChainSourceError(f"{self.name} RPC response has no result")
        return data["result"]

    def get_balance(self, address: str, asset_id: str) -> Decimal:
        spec = get_asset(asset_id)
        if spec.symbol == "BTC":
            result = self._rpc("BTC", "blockchain.address.get_balance", [address])
            # Electrum-style servers answer {"confirmed": sats, "unconfirmed": sats}.
            sats = _parse_int(result.get("confirmed")) if isinstance(result, dict) else _parse_int(result)
            return from_minor_units("BTC", sats)
        if spec.token_contract:
            data = ERC20_BALANCE_OF + address.lower().removeprefix("0x").rjust(64, "0")
            result = self._rpc(spec.symbol, "eth_call", [{"to": spec.token_contract, "data": data}, "latest"])
            return from_minor_units(spec.symbol, _parse_hex_quantity(result))
        result = self._rpc(spec.symbol, "eth_getBalance", [address, "latest"])
        return from_minor_units(spec.symbol, _parse_hex_quantity(result))


class EsploraChainSource(BalanceSource):
    """Blockstream/mempool.space REST API (BTC only)."""

    def __init__(self, base_url: str, *, name: str = "esplora", **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.base_url = str(base_url).rstrip("/")

    def supports(self, asset_id: str) -> bool:
        return asset_id == "BTC"

    def get_balance(self, address: str, asset_id: str) -> Decimal:
        data = self._json("GET", f"{self.base_url}/address/{address}")
        stats = data.get("chain_stats") if isinstance(data, dict) else None
        if not isinstance(stats, dict):
            raise ChainSourceError(f"{self.name} response has no chain_stats")
        sats = _parse_int(stats.get("funded_txo_sum")) - _parse_int(stats.get("spent_txo_sum"))
        return from_minor_units("BTC", sats)


class PriceSource(HttpSource):
    def get_price_usd(self, asset_id: str) -> Decimal:
        raise NotImplementedError


class CoinGeckoPriceSource(PriceSource):
    def __init__(self, base_url: str = "https://api.coingecko.com/api/v3", *, api_key: str | None = None, name: str = "coingecko", **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.base_url = str(base_url).rstrip("/")
        self.api_key = api_key

    def get_price_usd(self, asset_id: str) -> Decimal:
        spec = get_asset(asset_id)
        if not spec.coingecko_id:
            raise ChainSourceError(f"{self.name} has no id for {spec.symbol}")
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        data = self._json(
            "GET",
            f"{self.base_url}/simple/price",
            params={"ids": spec.coingecko_id, "vs_currencies": "usd"},
            headers=headers,
        )
        try:
            price = Decimal(str(data[spec.coingecko_id]["usd"]))
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ChainSourceError(f"{self.name} returned no USD price for {spec.symbol}") from exc
        if price <= 0:
            raise ChainSourceError(f"{self.name} returned non-positive price for {spec.symbol}")
        return price


class StaticPriceSource(PriceSource):
    name = "static"

    def __init__(self, prices: dict, **kwargs):
        super().__init__(**kwargs)
        self.prices = {str(k).upper(): Decimal(str(v)) for k, v in (prices or {}).items()}
        self.prices.setdefault(USD, Decimal("1"))

    def get_price_usd(self, asset_id: str) -> Decimal:
        price = self.prices.get(asset_id)
        if price is None:
            raise ChainSourceError(f"No static price for {asset_id}")
        return price
