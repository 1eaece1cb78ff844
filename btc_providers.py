"""
Data providers for the BTC payment builder.

Each provider category is a small capability interface with one method:

- BalanceProvider.get_balance(address) -> satoshis
- FeeRateProvider.get_fee_rate(tier) -> sat/byte
- UtxoProvider.get_utxos(address) -> list[UnspentOutput] in provider order
- PushTxProvider.push_tx(raw_hex) -> provider acknowledgment
- TxnInfoProvider.get_txn_info(txid) -> provider-specific record

HTTP implementations exist for mainnet and testnet. ProviderRegistry maps
(operation, network) to the named implementations and fixes the default
for each slot when it is constructed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping

import requests
from loguru import logger

from btc_types import (
    NETWORKS,
    BTCNetwork,
    FeeTier,
    ProviderError,
    UnspentOutput,
    ValidationError,
)

DEFAULT_HTTP_TIMEOUT = 10.0

BLOCKCHAIN_INFO_URLS = {
    "mainnet": "https://blockchain.info",
    "testnet": "https://testnet.blockchain.info",
}
MEMPOOL_API_URLS = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
}
EARN_FEES_URLS = {
    "mainnet": "https://bitcoinfees.earn.com/api/v1/fees/recommended",
    "testnet": "https://bitcoinfees.earn.com/api/v1/fees/recommended",
}
MEMPOOL_FEES_URLS = {
    "mainnet": "https://mempool.space/api/v1/fees/recommended",
    "testnet": "https://mempool.space/testnet/api/v1/fees/recommended",
}
BLOCKCYPHER_CHAINS = {"mainnet": "main", "testnet": "test3"}
BLOCKCYPHER_API_URL = "https://api.blockcypher.com/v1/btc"


class Operation(str, Enum):
    BALANCE = "balance"
    FEES = "fees"
    UTXO = "utxo"
    PUSHTX = "pushtx"
    TXN_INFO = "txnInfo"


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------


class BalanceProvider(ABC):
    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Confirmed balance of address in satoshis."""


class FeeRateProvider(ABC):
    @abstractmethod
    def get_fee_rate(self, tier: FeeTier) -> int:
        """Recommended fee rate for tier in satoshis per byte."""


class UtxoProvider(ABC):
    @abstractmethod
    def get_utxos(self, address: str) -> list[UnspentOutput]:
        """Unspent outputs of address, in the order the backend reports them."""


class PushTxProvider(ABC):
    @abstractmethod
    def push_tx(self, raw_hex: str) -> Any:
        """Submit a signed transaction; returns the backend's acknowledgment as-is."""


class TxnInfoProvider(ABC):
    @abstractmethod
    def get_txn_info(self, txid: str) -> Any:
        """Backend-specific record for txid."""


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _check_network(network: str) -> BTCNetwork:
    if network not in NETWORKS:
        raise ValidationError(
            f"Invalid network {network!r}. Expected 'mainnet' or 'testnet'."
        )
    return network  # type: ignore[return-value]


def _raise_for_provider(resp: requests.Response, provider: str, action: str) -> None:
    if not resp.ok:
        error_msg = resp.text or f"HTTP {resp.status_code}"
        raise ProviderError(f"{provider}: {action} failed (HTTP {resp.status_code}): {error_msg}")


def _json_body(resp: requests.Response, provider: str, action: str) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(f"{provider}: {action} returned a non-JSON body") from exc


class _HttpProvider:
    name = "http"

    def __init__(self, network: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        self.network = _check_network(network)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(network={self.network!r})"


# ---------------------------------------------------------------------------
# blockchain.info
# ---------------------------------------------------------------------------


class BlockchainInfoBalanceProvider(_HttpProvider, BalanceProvider):
    name = "blockchain"

    def get_balance(self, address: str) -> int:
        url = f"{BLOCKCHAIN_INFO_URLS[self.network]}/q/addressbalance/{address}"
        resp = requests.get(url, params={"confirmations": 6}, timeout=self.timeout)
        _raise_for_provider(resp, self.name, "balance lookup")
        try:
            return int(float(resp.text.strip()))
        except ValueError as exc:
            raise ProviderError(
                f"{self.name}: unexpected balance response {resp.text!r}"
            ) from exc


class BlockchainInfoUtxoProvider(_HttpProvider, UtxoProvider):
    name = "blockchain"

    def get_utxos(self, address: str) -> list[UnspentOutput]:
        url = f"{BLOCKCHAIN_INFO_URLS[self.network]}/unspent"
        resp = requests.get(url, params={"active": address}, timeout=self.timeout)
        # blockchain.info answers 500 with this body for an address with no coins.
        if resp.status_code == 500 and "No free outputs" in (resp.text or ""):
            return []
        _raise_for_provider(resp, self.name, "UTXO lookup")
        data = _json_body(resp, self.name, "UTXO lookup")
        return [
            UnspentOutput.from_dict(
                {
                    "txid": u.get("tx_hash_big_endian"),
                    "vout": u.get("tx_output_n"),
                    "satoshis": u.get("value"),
                    "confirmations": u.get("confirmations", 0),
                }
            )
            for u in data.get("unspent_outputs", [])
        ]


# ---------------------------------------------------------------------------
# Recommended fee endpoints (earn.com and mempool.space share the same shape)
# ---------------------------------------------------------------------------


class RecommendedFeeRateProvider(_HttpProvider, FeeRateProvider):
    """
    Reads `{"fastestFee": n, "halfHourFee": n, "hourFee": n}` style responses.

    The earn.com service is retired; its entry is kept for deployments that
    proxy the same API.
    """

    def __init__(
        self,
        name: str,
        urls: Mapping[str, str],
        network: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(network, timeout)
        self.name = name
        self.url = urls[self.network]

    def get_fee_rate(self, tier: FeeTier) -> int:
        resp = requests.get(self.url, timeout=self.timeout)
        _raise_for_provider(resp, self.name, "fee lookup")
        data = _json_body(resp, self.name, "fee lookup")
        key = f"{FeeTier(tier).value}Fee"
        if not isinstance(data, dict) or key not in data:
            raise ProviderError(f"{self.name}: fee response has no {key!r} entry")
        try:
            return int(data[key])
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"{self.name}: {key}={data[key]!r} is not a number") from exc


# ---------------------------------------------------------------------------
# mempool.space
# ---------------------------------------------------------------------------


class MempoolUtxoProvider(_HttpProvider, UtxoProvider):
    name = "mempool"

    def _tip_height(self) -> int:
        resp = requests.get(
            f"{MEMPOOL_API_URLS[self.network]}/blocks/tip/height", timeout=self.timeout
        )
        _raise_for_provider(resp, self.name, "tip height lookup")
        try:
            return int(resp.text.strip())
        except ValueError as exc:
            raise ProviderError(f"{self.name}: unexpected tip height {resp.text!r}") from exc

    def get_utxos(self, address: str) -> list[UnspentOutput]:
        url = f"{MEMPOOL_API_URLS[self.network]}/address/{address}/utxo"
        resp = requests.get(url, timeout=self.timeout)
        _raise_for_provider(resp, self.name, "UTXO lookup")
        data = _json_body(resp, self.name, "UTXO lookup")
        if not isinstance(data, list):
            raise ProviderError(f"{self.name}: UTXO response is not a list")

        tip: int | None = None
        utxos = []
        for u in data:
            status = u.get("status", {}) or {}
            height = int(status.get("block_height", 0) or 0)
            confirmations = 0
            if status.get("confirmed") and height:
                if tip is None:
                    tip = self._tip_height()
                confirmations = max(tip - height + 1, 0)
            utxos.append(
                UnspentOutput.from_dict(
                    {
                        "txid": u.get("txid"),
                        "vout": u.get("vout"),
                        "satoshis": u.get("value"),
                        "confirmations": confirmations,
                    }
                )
            )
        return utxos


class MempoolPushTxProvider(_HttpProvider, PushTxProvider):
    name = "mempool"

    def push_tx(self, raw_hex: str) -> str:
        resp = requests.post(
            f"{MEMPOOL_API_URLS[self.network]}/tx", data=raw_hex, timeout=self.timeout
        )
        _raise_for_provider(resp, self.name, "transaction broadcast")
        # mempool.space returns the txid as plain text.
        return resp.text.strip()


class MempoolTxnInfoProvider(_HttpProvider, TxnInfoProvider):
    name = "mempool"

    def get_txn_info(self, txid: str) -> Any:
        resp = requests.get(
            f"{MEMPOOL_API_URLS[self.network]}/tx/{txid}", timeout=self.timeout
        )
        _raise_for_provider(resp, self.name, "transaction lookup")
        return _json_body(resp, self.name, "transaction lookup")


# ---------------------------------------------------------------------------
# BlockCypher
# ---------------------------------------------------------------------------


class BlockcypherPushTxProvider(_HttpProvider, PushTxProvider):
    name = "blockcypher"

    def push_tx(self, raw_hex: str) -> Any:
        chain = BLOCKCYPHER_CHAINS[self.network]
        resp = requests.post(
            f"{BLOCKCYPHER_API_URL}/{chain}/txs/push",
            json={"tx": raw_hex},
            timeout=self.timeout,
        )
        _raise_for_provider(resp, self.name, "transaction broadcast")
        return _json_body(resp, self.name, "transaction broadcast")


class BlockcypherTxnInfoProvider(_HttpProvider, TxnInfoProvider):
    name = "blockcypher"

    def get_txn_info(self, txid: str) -> Any:
        chain = BLOCKCYPHER_CHAINS[self.network]
        resp = requests.get(f"{BLOCKCYPHER_API_URL}/{chain}/txs/{txid}", timeout=self.timeout)
        _raise_for_provider(resp, self.name, "transaction lookup")
        return _json_body(resp, self.name, "transaction lookup")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ProviderKey = tuple[Operation, str]

_PROVIDER_METHODS = {
    Operation.BALANCE: "get_balance",
    Operation.FEES: "get_fee_rate",
    Operation.UTXO: "get_utxos",
    Operation.PUSHTX: "push_tx",
    Operation.TXN_INFO: "get_txn_info",
}


class ProviderRegistry:
    """
    Named providers per (operation, network), with one default per slot.

    Both tables are copied at construction and never change afterwards, so
    a registry can be shared between concurrent payments.
    """

    def __init__(
        self,
        providers: Mapping[ProviderKey, Mapping[str, Any]],
        defaults: Mapping[ProviderKey, str],
    ) -> None:
        self._providers: dict[ProviderKey, dict[str, Any]] = {
            (Operation(op), network): dict(table)
            for (op, network), table in providers.items()
        }
        self._defaults: dict[ProviderKey, str] = {
            (Operation(op), network): name for (op, network), name in defaults.items()
        }
        for (op, network), name in self._defaults.items():
            if name not in self._providers.get((op, network), {}):
                raise ValueError(
                    f"Default {op.value} provider {name!r} for {network} is not registered."
                )

    def names(self, operation: Operation | str, network: str) -> list[str]:
        return sorted(self._providers.get((Operation(operation), network), {}))

    def default_name(self, operation: Operation | str, network: str) -> str | None:
        return self._defaults.get((Operation(operation), network))

    def get(self, operation: Operation | str, network: str, name: str | None = None) -> Any:
        op = Operation(operation)
        _check_network(network)
        table = self._providers.get((op, network))
        if not table:
            raise ValidationError(f"No {op.value} providers registered for {network}.")
        if name is None:
            name = self._defaults.get((op, network))
            if name is None:
                raise ValidationError(f"No default {op.value} provider for {network}.")
        provider = table.get(name)
        if provider is None:
            known = ", ".join(sorted(table))
            raise ValidationError(
                f"Unknown {op.value} provider {name!r} for {network}. Known: {known}."
            )
        return provider

    def resolve(self, operation: Operation | str, network: str, value: Any = None) -> Any:
        """
        Turn a provider option into a provider object.

        None selects the default, a string selects by name, anything else
        must already implement the operation's method.
        """
        op = Operation(operation)
        if value is None or isinstance(value, str):
            return self.get(op, network, value)
        method = _PROVIDER_METHODS[op]
        if not callable(getattr(value, method, None)):
            raise ValidationError(
                f"{op.value} provider {value!r} does not implement {method}()."
            )
        return value


def build_default_registry(timeout: float = DEFAULT_HTTP_TIMEOUT) -> ProviderRegistry:
    providers: dict[ProviderKey, dict[str, Any]] = {}
    defaults: dict[ProviderKey, str] = {}
    for network in NETWORKS:
        providers[(Operation.BALANCE, network)] = {
            "blockchain": BlockchainInfoBalanceProvider(network, timeout),
        }
        providers[(Operation.FEES, network)] = {
            "earn": RecommendedFeeRateProvider("earn", EARN_FEES_URLS, network, timeout),
            "mempool": RecommendedFeeRateProvider("mempool", MEMPOOL_FEES_URLS, network, timeout),
        }
        providers[(Operation.UTXO, network)] = {
            "blockchain": BlockchainInfoUtxoProvider(network, timeout),
            "mempool": MempoolUtxoProvider(network, timeout),
        }
        providers[(Operation.PUSHTX, network)] = {
            "blockcypher": BlockcypherPushTxProvider(network, timeout),
            "mempool": MempoolPushTxProvider(network, timeout),
        }
        providers[(Operation.TXN_INFO, network)] = {
            "blockcypher": BlockcypherTxnInfoProvider(network, timeout),
            "mempool": MempoolTxnInfoProvider(network, timeout),
        }
        defaults[(Operation.BALANCE, network)] = "blockchain"
        defaults[(Operation.FEES, network)] = "mempool"
        defaults[(Operation.UTXO, network)] = "blockchain"
        defaults[(Operation.PUSHTX, network)] = "blockcypher"
        defaults[(Operation.TXN_INFO, network)] = "mempool"

    logger.debug(f"Built default provider registry (timeout={timeout}s)")
    return ProviderRegistry(providers, defaults)
