from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
import enum

from custody.core.errors import ConfigurationError


class DerivationNamespace(str, enum.Enum):
    BTC = "btc"
    ETH = "eth"
    BNB = "bnb"


@dataclass(frozen=True)
class AssetSpec:
    symbol: str
    decimals: int
    namespace: DerivationNamespace | None = None
    coingecko_id: str | None = None
    # ERC-20 contract for token assets living on another asset's address space.
    token_contract: str | None = None

    @property
    def is_depositable(self) -> bool:
        return self.namespace is not None

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)


USD = "USD"

ASSETS: dict[str, AssetSpec] = {
    "BTC": AssetSpec("BTC", 8, DerivationNamespace.BTC, "bitcoin"),
    "ETH": AssetSpec("ETH", 18, DerivationNamespace.ETH, "ethereum"),
    "BNB": AssetSpec("BNB", 18, DerivationNamespace.BNB, "binancecoin"),
    # USDT (ERC-20) shares the ETH address space and its index counter.
    "USDT": AssetSpec(
        "USDT",
        6,
        DerivationNamespace.ETH,
        "tether",
        token_contract="0xdAC17F958D2ee523a2206206994597C13D831ec7",
    ),
    USD: AssetSpec(USD, 2),
}


def normalize_asset_id(asset_id: str) -> str:
    return str(asset_id or "").strip().upper()


def get_asset(asset_id: str) -> AssetSpec:
    spec = ASSETS.get(normalize_asset_id(asset_id))
    if spec is None:
        raise ConfigurationError(f"Unsupported asset: {asset_id!r}")
    return spec


def deposit_assets() -> list[AssetSpec]:
    return [spec for spec in ASSETS.values() if spec.is_depositable]


def quantize(asset_id: str, amount) -> Decimal:
    spec = get_asset(asset_id)
    return Decimal(str(amount)).quantize(spec.quantum, rounding=ROUND_DOWN)


def to_minor_units(asset_id: str, amount) -> int:
    spec = get_asset(asset_id)
    return int(quantize(asset_id, amount).scaleb(spec.decimals))


def from_minor_units(asset_id: str, value: int) -> Decimal:
    spec = get_asset(asset_id)
    return Decimal(int(value)).scaleb(-spec.decimals).quantize(spec.quantum)
