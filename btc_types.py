"""
Shared types for the BTC payment builder: networks, fee tiers, unspent
outputs and the error taxonomy raised by the pipeline and its providers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Mapping

BTCNetwork = Literal["mainnet", "testnet"]
NETWORKS: tuple[str, ...] = ("mainnet", "testnet")


class PaymentError(Exception):
    """Base class for every error raised while building or sending a payment."""


class ValidationError(PaymentError):
    """A required option is missing or malformed. Raised before any network call."""


class InsufficientFundsError(PaymentError):
    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            "You do not have enough in your wallet to send that much. "
            f"Available: {available} sats, Required: {required} sats"
        )


class FeeExceedsAmountError(PaymentError):
    def __init__(self, fee: int, amount: int) -> None:
        self.fee = fee
        self.amount = amount
        super().__init__(
            f"Amount must be larger than the fee. Fee: {fee} sats, Amount: {amount} sats "
            "(ideally it should be much larger)"
        )


class ProviderError(PaymentError):
    """A data provider answered with an error status or an unreadable body."""


class PaymentConfigError(PaymentError):
    """Configuration or key-material error in the environment."""

    pass


class FeeTier(str, Enum):
    FASTEST = "fastest"
    HALF_HOUR = "halfHour"
    HOUR = "hour"

    @classmethod
    def parse(cls, value: str) -> FeeTier:
        normalized = value.strip().replace("-", "").replace("_", "").lower()
        for tier in cls:
            if tier.value.lower() == normalized:
                return tier
        allowed = ", ".join(t.value for t in cls)
        raise ValidationError(f"Unknown fee tier {value!r}. Expected one of: {allowed}.")


@dataclass(frozen=True)
class UnspentOutput:
    txid: str
    vout: int
    value_sats: int
    confirmations: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UnspentOutput:
        """
        Accept the provider-neutral shape {txid, vout, satoshis, confirmations}.

        `value` / `value_sats` are accepted in place of `satoshis`.
        """
        try:
            if "satoshis" in data:
                value = data["satoshis"]
            elif "value_sats" in data:
                value = data["value_sats"]
            else:
                value = data["value"]
            return cls(
                txid=str(data["txid"]),
                vout=int(data["vout"]),
                value_sats=int(value),
                confirmations=int(data.get("confirmations", 0) or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"Malformed unspent output: {dict(data)!r}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "satoshis": self.value_sats,
            "confirmations": self.confirmations,
        }
