import logging
from decimal import Decimal
from functools import lru_cache

import httpx

from custody.core.assets import USD, get_asset
from custody.core.config import Settings, get_settings, parse_json_list
from custody.core.errors import ConfigurationError, ProviderUnavailable
from custody.services.chain_sources import (
    BalanceSource,
    ChainSourceError,
    CoinGeckoPriceSource,
    EsploraChainSource,
    JsonRpcChainSource,
    PriceSource,
    StaticPriceSource,
)
from custody.utils.cache import get_cached, set_cached

logger = logging.getLogger(__name__)

# Anything a misbehaving upstream can make a source raise.
SOURCE_ERRORS = (ChainSourceError, httpx.HTTPError, ValueError, KeyError, TypeError, ArithmeticError)


class BalanceProvider:
    """Uniform read-only view of chain balances and prices with ordered fallback."""

    def __init__(
        self,
        chain_sources: list[BalanceSource],
        price_sources: list[PriceSource],
        *,
        cache_ttl_seconds: int = 20,
    ):
        self.chain_sources = list(chain_sources)
        self.price_sources = list(price_sources)
        self.cache_ttl_seconds = cache_ttl_seconds

    def get_balance(self, address: str, asset_id: str) -> Decimal:
        spec = get_asset(asset_id)
        cache_key = f"balance:{spec.symbol}:{address}"
        cached = get_cached(cache_key)
        if cached is not None:
            return cached

        errors: list[str] = []
        for source in self.chain_sources:
            if not source.supports(spec.symbol):
                continue
            try:
                balance = source.get_balance(address, spec.symbol)
            except SOURCE_ERRORS as exc:
                errors.append(f"{source.name}: {exc}")
                logger.warning("Balance source %s failed for %s %s: %s", source.name, spec.symbol, address, exc)
                continue
            if balance < 0:
                errors.append(f"{source.name}: negative balance {balance}")
                continue
            set_cached(cache_key, balance, ttl_seconds=self.cache_ttl_seconds)
            return balance

        if not errors:
            errors.append("no source configured")
        raise ProviderUnavailable(f"No balance available for {spec.symbol} {address}", errors=errors)

    def get_price_usd(self, asset_id: str) -> Decimal:
        spec = get_asset(asset_id)
        if spec.symbol == USD:
            return Decimal("1")
        cache_key = f"price:{spec.symbol}"
        cached = get_cached(cache_key)
        if cached is not None:
            return cached

        errors: list[str] = []
        for source in self.price_sources:
            try:
                price = source.get_price_usd(spec.symbol)
            except SOURCE_ERRORS as exc:
                errors.append(f"{source.name}: {exc}")
                logger.warning("Price source %s failed for %s: %s", source.name, spec.symbol, exc)
                continue
            set_cached(cache_key, price, ttl_seconds=self.cache_ttl_seconds)
            return price

        if not errors:
            errors.append("no source configured")
        raise ProviderUnavailable(f"No USD price available for {spec.symbol}", errors=errors)


def _build_chain_source(config: dict, timeout: float) -> BalanceSource:
    kind = str(config.get("kind") or "").strip().lower()
    if kind == "jsonrpc":
        return JsonRpcChainSource(
            str(config.get("name") or "jsonrpc"),
            config.get("endpoints") or {},
            api_key=config.get("api_key"),
            timeout=timeout,
        )
    if kind == "esplora":
        if not config.get("base_url"):
            raise ConfigurationError("esplora chain source needs base_url")
        return EsploraChainSource(config["base_url"], name=str(config.get("name") or "esplora"), timeout=timeout)
    raise ConfigurationError(f"Unknown chain source kind: {kind!r}")


def _build_price_source(config: dict, timeout: float, settings: Settings) -> PriceSource:
    kind = str(config.get("kind") or "").strip().lower()
    if kind == "coingecko":
        return CoinGeckoPriceSource(
            config.get("base_url") or "https://api.coingecko.com/api/v3",
            api_key=config.get("api_key") or settings.coingecko_api_key,
            timeout=timeout,
        )
    if kind == "static":
        return StaticPriceSource(config.get("prices") or {})
    raise ConfigurationError(f"Unknown price source kind: {kind!r}")


def build_balance_provider(settings: Settings) -> BalanceProvider:
    timeout = float(settings.provider_timeout_seconds)
    chain_sources = [_build_chain_source(item, timeout) for item in parse_json_list(settings.chain_sources)]
    price_sources = [_build_price_source(item, timeout, settings) for item in parse_json_list(settings.price_sources)]
    if not chain_sources:
        logger.warning("CHAIN_SOURCES is empty; deposits will never be observed")
    return BalanceProvider(chain_sources, price_sources, cache_ttl_seconds=settings.provider_cache_ttl_seconds)


@lru_cache
def get_balance_provider() -> BalanceProvider:
    return build_balance_provider(get_settings())
