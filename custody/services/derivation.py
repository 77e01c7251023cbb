"""Deterministic BIP-44 deposit address derivation.

Same (seed, asset, index) always yields the same address and key, so nothing
but the master seed has to be kept secret.
"""
from dataclasses import dataclass
from functools import lru_cache

from bip_utils import Bip32Slip10Secp256k1, Bip39SeedGenerator, EthAddrEncoder, P2PKHAddrEncoder

from custody.core.assets import DerivationNamespace, get_asset
from custody.core.errors import ConfigurationError
from custody.core.secrets import get_secret_provider

BTC_P2PKH_NET_VER = b"\x00"

PATH_PREFIXES = {
    DerivationNamespace.BTC: "m/44'/0'/0'/0/",
    DerivationNamespace.ETH: "m/44'/60'/0'/0/",
    DerivationNamespace.BNB: "m/44'/714'/0'/0/",
}

# BIP-32 non-hardened child indices stop at 2**31 - 1.
MAX_INDEX = 2**31 - 1


@dataclass(frozen=True)
class DerivedKey:
    address: str
    private_key: str
    hd_path: str

    def __repr__(self) -> str:
        return f"DerivedKey(address={self.address!r}, hd_path={self.hd_path!r})"


def master_seed_from_mnemonic(mnemonic: str, passphrase: str = "") -> bytes:
    try:
        return bytes(Bip39SeedGenerator(mnemonic).Generate(passphrase))
    except Exception as exc:
        # Never echo the mnemonic back in the error.
        raise ConfigurationError("Configured wallet mnemonic is not a valid BIP-39 phrase") from exc


@lru_cache
def get_master_seed() -> bytes:
    provider = get_secret_provider()
    return master_seed_from_mnemonic(provider.mnemonic(), provider.passphrase())


def hd_path_for(namespace: DerivationNamespace, index: int) -> str:
    if not isinstance(index, int) or isinstance(index, bool):
        raise ConfigurationError(f"Derivation index must be an integer, got {index!r}")
    if index < 0 or index > MAX_INDEX:
        raise ConfigurationError(f"Derivation index out of range: {index}")
    prefix = PATH_PREFIXES.get(namespace)
    if prefix is None:
        raise ConfigurationError(f"No derivation path for namespace {namespace!r}")
    return f"{prefix}{index}"


def derive_address(seed: bytes, asset_id: str, index: int) -> DerivedKey:
    spec = get_asset(asset_id)
    if spec.namespace is None:
        raise ConfigurationError(f"Asset {spec.symbol} has no deposit address space")
    if not seed:
        raise ConfigurationError("Master seed is empty")

    hd_path = hd_path_for(spec.namespace, index)
    node = Bip32Slip10Secp256k1.FromSeed(seed).DerivePath(hd_path)
    public_key = node.PublicKey().KeyObject()

    if spec.namespace == DerivationNamespace.BTC:
        address = P2PKHAddrEncoder.EncodeKey(public_key, net_ver=BTC_P2PKH_NET_VER)
    else:
        # ETH/USDT and BNB (BSC) are account-style hex addresses on distinct coin paths.
        address = EthAddrEncoder.EncodeKey(public_key)

    return DerivedKey(
        address=address,
        private_key=node.PrivateKey().Raw().ToHex(),
        hd_path=hd_path,
    )
