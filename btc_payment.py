"""
Single-recipient BTC payment pipeline.

Funds a payment from the sender's confirmed unspent outputs, computes the
fee from a fixed size formula, builds the payment and change outputs, signs
every input with one WIF key, and either returns the signed transaction
(dry run) or hands its hex to a push-tx provider.

Stages:
    resolve_fee_rate -> select_coins -> estimate_fee -> assemble -> sign -> dispatch

send_transaction() runs the whole pipeline from an option mapping.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Union

import coincurve
from bit import Key, PrivateKeyTestnet, wif_to_key
from bit.base32 import encode as segwit_encode
from bit.network.meta import Unspent
from bit.transaction import address_to_scriptpubkey, calc_txid, create_new_transaction
from bit.utils import bytes_to_hex
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTxInWitness,
    CTxWitness,
    Hash160,
    b2lx,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)
from dotenv import load_dotenv
from loguru import logger

from btc_providers import (
    DEFAULT_HTTP_TIMEOUT,
    Operation,
    ProviderRegistry,
    build_default_registry,
)
from btc_types import (
    NETWORKS,
    BTCNetwork,
    FeeExceedsAmountError,
    FeeTier,
    InsufficientFundsError,
    PaymentConfigError,
    UnspentOutput,
    ValidationError,
)

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

MIN_CONFIRMATIONS = 6
INPUT_SIZE_BYTES = 180
OUTPUT_SIZE_BYTES = 34
TX_OVERHEAD_BYTES = 10

NATIVE_SEGWIT_PREFIXES = ("bc1q", "tb1q")
BECH32_HRPS = {"mainnet": "bc", "testnet": "tb"}


# ---------------------------------------------------------------------------
# Fee specification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiteralRate:
    sat_per_byte: int


@dataclass(frozen=True)
class NamedTier:
    tier: FeeTier


FeeSpec = Union[LiteralRate, NamedTier]


def parse_fee_spec(value: Any) -> FeeSpec:
    """
    Map a fee option onto the FeeSpec union.

    ints and digit strings are literal sat/byte rates; anything else must
    name a tier ("fastest", "halfHour", "hour").
    """
    if isinstance(value, (LiteralRate, NamedTier)):
        return value
    if isinstance(value, FeeTier):
        return NamedTier(value)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid fee {value!r}. Use a tier name or a sat/byte rate.")
    if isinstance(value, int):
        rate = value
    elif isinstance(value, str) and value.strip().isdigit():
        rate = int(value.strip())
    elif isinstance(value, str):
        return NamedTier(FeeTier.parse(value))
    else:
        raise ValidationError(f"Invalid fee {value!r}. Use a tier name or a sat/byte rate.")
    if rate < 0:
        raise ValidationError(f"Invalid fee rate {rate}. Must not be negative.")
    return LiteralRate(rate)


def resolve_fee_rate(spec: FeeSpec, provider: Any) -> int:
    """Literal rates are returned as-is; named tiers cost exactly one provider call."""
    match spec:
        case LiteralRate(sat_per_byte=rate):
            return rate
        case NamedTier(tier=tier):
            rate = int(provider.get_fee_rate(tier))
            logger.debug(f"Fee tier {tier.value} resolved to {rate} sat/byte")
            return rate
    raise ValidationError(f"Unsupported fee specification {spec!r}")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

_TRUE_WORDS = ("true", "1", "yes", "on")
_FALSE_WORDS = ("false", "0", "no", "off")


def _option_flag(options: Mapping[str, Any], name: str) -> bool:
    value = options.get(name)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValidationError(f"Invalid {name} {value!r}. Expected true or false.")


@dataclass(frozen=True)
class PaymentRequest:
    from_address: str
    to_address: str
    amount_sats: int
    priv_key_wif: str = field(repr=False)
    network: BTCNetwork
    fee: FeeSpec
    dry_run: bool
    empty_wallet: bool
    fees_provider: Any
    utxo_provider: Any
    pushtx_provider: Any

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        registry: ProviderRegistry | None = None,
    ) -> PaymentRequest:
        """
        Validate an option mapping and resolve its providers.

        Required: from_address, to_address, amount_sats, priv_key_wif.
        Optional: network ("mainnet"), fee ("fastest"), fees_provider,
        utxo_provider, pushtx_provider (registry name or provider object),
        dry_run (False), empty_wallet (False).

        Never touches the network.
        """
        if not isinstance(options, Mapping):
            raise ValidationError("Options must be specified and must be a mapping.")
        if not options.get("from_address"):
            raise ValidationError("Must specify from address.")
        if not options.get("to_address"):
            raise ValidationError("Must specify to address.")
        if options.get("amount_sats") is None:
            raise ValidationError("Must specify amount of satoshis to send.")
        if not options.get("priv_key_wif"):
            raise ValidationError("Must specify the wallet's private key in WIF format.")

        amount = options["amount_sats"]
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Invalid amount {amount!r}. Must be an integer number of satoshis.")
        if amount <= 0:
            raise ValidationError("Invalid amount. Must be greater than zero.")

        network = str(options.get("network") or "mainnet").lower()
        if network not in NETWORKS:
            raise ValidationError(
                f"Invalid network {options.get('network')!r}. Expected 'mainnet' or 'testnet'."
            )

        fee_option = options.get("fee")
        fee = parse_fee_spec("fastest" if fee_option is None else fee_option)

        if registry is None:
            registry = build_default_registry()

        return cls(
            from_address=str(options["from_address"]).strip(),
            to_address=str(options["to_address"]).strip(),
            amount_sats=amount,
            priv_key_wif=str(options["priv_key_wif"]).strip(),
            network=network,  # type: ignore[arg-type]
            fee=fee,
            dry_run=_option_flag(options, "dry_run"),
            empty_wallet=_option_flag(options, "empty_wallet"),
            fees_provider=registry.resolve(Operation.FEES, network, options.get("fees_provider")),
            utxo_provider=registry.resolve(Operation.UTXO, network, options.get("utxo_provider")),
            pushtx_provider=registry.resolve(
                Operation.PUSHTX, network, options.get("pushtx_provider")
            ),
        )


@dataclass
class SelectionResult:
    selected: list[UnspentOutput]
    total_input_sats: int


@dataclass(frozen=True)
class TxOutput:
    address: str
    value_sats: int


@dataclass
class AssembledTransaction:
    inputs: list[UnspentOutput]
    outputs: list[TxOutput]
    fee_sats: int

    @property
    def total_input_sats(self) -> int:
        return sum(u.value_sats for u in self.inputs)

    @property
    def total_output_sats(self) -> int:
        return sum(o.value_sats for o in self.outputs)


@dataclass
class SignedTransaction:
    raw_hex: str
    txid: str
    assembled: AssembledTransaction
    network: BTCNetwork

    def to_dict(self) -> dict[str, Any]:
        return {
            "txid": self.txid,
            "raw_hex": self.raw_hex,
            "network": self.network,
            "fee_sats": self.assembled.fee_sats,
            "inputs": [u.to_dict() for u in self.assembled.inputs],
            "outputs": [
                {"address": o.address, "value_sats": o.value_sats}
                for o in self.assembled.outputs
            ],
        }


# ---------------------------------------------------------------------------
# Coin selection, sizing, assembly
# ---------------------------------------------------------------------------


def select_coins(utxos: Iterable[UnspentOutput], amount_sats: int) -> SelectionResult:
    """
    First-fit selection in provider order.

    Outputs with fewer than MIN_CONFIRMATIONS confirmations are skipped.
    Stops at the first prefix of eligible coins that covers amount_sats.
    """
    selected: list[UnspentOutput] = []
    total = 0
    for utxo in utxos:
        if utxo.confirmations < MIN_CONFIRMATIONS:
            continue
        selected.append(utxo)
        total += utxo.value_sats
        if total >= amount_sats:
            break

    if total < amount_sats:
        raise InsufficientFundsError(total, amount_sats)

    logger.debug(f"Selected {len(selected)} UTXOs totalling {total} sats for {amount_sats} sats")
    return SelectionResult(selected=selected, total_input_sats=total)


def estimate_size(num_inputs: int, num_outputs: int) -> int:
    # num_inputs appears twice: 181 bytes per input plus fixed overhead.
    return (
        num_inputs * INPUT_SIZE_BYTES
        + num_outputs * OUTPUT_SIZE_BYTES
        + TX_OVERHEAD_BYTES
        + num_inputs
    )


def estimate_fee(num_inputs: int, num_outputs: int, sat_per_byte: int) -> int:
    return estimate_size(num_inputs, num_outputs) * sat_per_byte


def assemble(
    selection: SelectionResult,
    request: PaymentRequest,
    fee_sats: int,
) -> AssembledTransaction:
    """
    Payment output of amount - fee to the recipient, plus change if any.

    With empty_wallet the change goes to the recipient as well.
    """
    if fee_sats >= request.amount_sats:
        raise FeeExceedsAmountError(fee_sats, request.amount_sats)

    outputs = [TxOutput(request.to_address, request.amount_sats - fee_sats)]
    change = selection.total_input_sats - request.amount_sats
    if change > 0:
        change_address = request.to_address if request.empty_wallet else request.from_address
        outputs.append(TxOutput(change_address, change))

    assembled = AssembledTransaction(
        inputs=list(selection.selected), outputs=outputs, fee_sats=fee_sats
    )
    logger.debug(
        f"Assembled {len(assembled.inputs)} inputs / {len(outputs)} outputs, "
        f"fee {fee_sats} sats, change {change} sats"
    )
    return assembled


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def _make_key_from_wif(wif: str, network: BTCNetwork):
    try:
        key = wif_to_key(wif)
    except Exception as exc:  # noqa: BLE001
        raise ValidationError("Private key is not a valid WIF.") from exc
    expected = Key if network == "mainnet" else PrivateKeyTestnet
    if not isinstance(key, expected):
        raise ValidationError(f"Private key WIF is not a {network} key.")
    return key


def _p2wpkh_address(public_key: bytes, network: BTCNetwork) -> str:
    return segwit_encode(BECH32_HRPS[network], 0, Hash160(public_key))


def _sign_legacy_tx(
    assembled: AssembledTransaction,
    key,
    from_address: str,
) -> tuple[str, str]:
    """P2PKH and P2SH-P2WPKH spends, built and signed by bit."""
    if from_address == key.address:
        script_type = "p2pkh"
    elif key.segwit_address and from_address == key.segwit_address:
        script_type = "np2wkh"
    else:
        raise ValidationError(f"Private key does not control {from_address}.")

    script_hex = bytes_to_hex(address_to_scriptpubkey(from_address))
    unspents = [
        Unspent(u.value_sats, u.confirmations, script_hex, u.txid, u.vout, type=script_type)
        for u in assembled.inputs
    ]
    outputs = []
    for o in assembled.outputs:
        try:
            address_to_scriptpubkey(o.address)
        except ValueError as exc:
            raise ValidationError(f"Cannot build an output script for {o.address}.") from exc
        outputs.append((o.address, o.value_sats))

    raw_hex = create_new_transaction(key, unspents, outputs)
    return raw_hex, calc_txid(raw_hex)


def _build_native_segwit_tx(
    assembled: AssembledTransaction,
    key,
    from_address: str,
    network: BTCNetwork,
) -> tuple[str, str]:
    """
    Build and sign a native SegWit (P2WPKH) spend with python-bitcoinlib.

    Signature hashes follow BIP143; signatures come from coincurve, which
    uses RFC6979 nonces.
    """
    pubkey = key.public_key
    pubkey_hash = Hash160(pubkey)
    if _p2wpkh_address(pubkey, network) != from_address.lower():
        raise ValidationError(f"Private key does not control {from_address}.")

    txins = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in assembled.inputs]
    txouts = []
    for o in assembled.outputs:
        try:
            script_pubkey = CScript(address_to_scriptpubkey(o.address))
        except ValueError as exc:
            raise ValidationError(f"Cannot build an output script for {o.address}.") from exc
        txouts.append(CMutableTxOut(o.value_sats, script_pubkey))
    tx = CMutableTransaction(txins, txouts)

    # For P2WPKH the scriptCode is the P2PKH script of the same key hash.
    script_code = CScript([OP_DUP, OP_HASH160, pubkey_hash, OP_EQUALVERIFY, OP_CHECKSIG])
    signer = coincurve.PrivateKey(key.to_bytes())
    witnesses = []
    for i, u in enumerate(assembled.inputs):
        sighash = SignatureHash(
            script_code, tx, i, SIGHASH_ALL, amount=u.value_sats, sigversion=SIGVERSION_WITNESS_V0
        )
        sig = signer.sign(sighash, hasher=None) + bytes([SIGHASH_ALL])
        witnesses.append(CTxInWitness(CScriptWitness([sig, pubkey])))
    tx.wit = CTxWitness(witnesses)

    return b2x(tx.serialize()), b2lx(tx.GetTxid())


def sign(
    assembled: AssembledTransaction,
    priv_key_wif: str,
    network: BTCNetwork,
    from_address: str,
) -> SignedTransaction:
    """Sign every input of assembled with the single key behind priv_key_wif."""
    key = _make_key_from_wif(priv_key_wif, network)
    if from_address.lower().startswith(NATIVE_SEGWIT_PREFIXES):
        raw_hex, txid = _build_native_segwit_tx(assembled, key, from_address, network)
    else:
        raw_hex, txid = _sign_legacy_tx(assembled, key, from_address)

    logger.debug(f"Signed transaction {txid} ({len(raw_hex) // 2} bytes)")
    return SignedTransaction(raw_hex=raw_hex, txid=txid, assembled=assembled, network=network)


# ---------------------------------------------------------------------------
# Dispatch and pipeline
# ---------------------------------------------------------------------------


def dispatch(signed: SignedTransaction, request: PaymentRequest) -> Any:
    if request.dry_run:
        logger.info(f"Dry run: returning unsubmitted transaction {signed.txid}")
        return signed
    logger.info(f"Submitting transaction {signed.txid} on {request.network}")
    return request.pushtx_provider.push_tx(signed.raw_hex)


def _coerce_utxos(raw: Iterable[Any]) -> list[UnspentOutput]:
    return [u if isinstance(u, UnspentOutput) else UnspentOutput.from_dict(u) for u in raw]


def _gather_inputs(request: PaymentRequest) -> tuple[int, list[UnspentOutput]]:
    """Fee rate and UTXO set; the two lookups run concurrently when both hit the network."""
    if isinstance(request.fee, LiteralRate):
        fee_rate = resolve_fee_rate(request.fee, request.fees_provider)
        return fee_rate, _coerce_utxos(request.utxo_provider.get_utxos(request.from_address))

    with ThreadPoolExecutor(max_workers=2) as pool:
        fee_future = pool.submit(resolve_fee_rate, request.fee, request.fees_provider)
        utxo_future = pool.submit(request.utxo_provider.get_utxos, request.from_address)
        fee_rate = fee_future.result()
        utxos = utxo_future.result()
    return fee_rate, _coerce_utxos(utxos)


def build_transaction(request: PaymentRequest) -> SignedTransaction:
    """Everything up to and including signing; no submission."""
    fee_rate, utxos = _gather_inputs(request)
    selection = select_coins(utxos, request.amount_sats)
    change = selection.total_input_sats - request.amount_sats
    num_outputs = 2 if change > 0 else 1
    fee_sats = estimate_fee(len(selection.selected), num_outputs, fee_rate)
    logger.debug(
        f"Fee {fee_sats} sats at {fee_rate} sat/byte "
        f"({estimate_size(len(selection.selected), num_outputs)} bytes)"
    )
    assembled = assemble(selection, request, fee_sats)
    return sign(assembled, request.priv_key_wif, request.network, request.from_address)


def send_transaction(
    options: Mapping[str, Any],
    registry: ProviderRegistry | None = None,
) -> Any:
    """
    Build, sign and submit a payment.

    Returns the SignedTransaction on dry run, otherwise the push-tx
    provider's response unchanged.
    """
    request = PaymentRequest.from_options(options, registry)
    signed = build_transaction(request)
    return dispatch(signed, request)


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------


def _lookup_provider(
    operation: Operation,
    network: str,
    provider: Any,
    registry: ProviderRegistry | None,
) -> Any:
    network = str(network or "mainnet").lower()
    if registry is None:
        registry = build_default_registry()
    return registry.resolve(operation, network, provider)


def get_balance(
    address: str,
    network: str = "mainnet",
    balance_provider: Any = None,
    registry: ProviderRegistry | None = None,
) -> int:
    if not address:
        raise ValidationError("Must specify the address.")
    provider = _lookup_provider(Operation.BALANCE, network, balance_provider, registry)
    return int(provider.get_balance(address))


def get_transaction_info(
    txid: str,
    network: str = "mainnet",
    txn_info_provider: Any = None,
    registry: ProviderRegistry | None = None,
) -> Any:
    if not txid:
        raise ValidationError("Must specify the hash.")
    provider = _lookup_provider(Operation.TXN_INFO, network, txn_info_provider, registry)
    return provider.get_txn_info(txid)


def get_user_txns(
    address: str,
    network: str = "mainnet",
    utxo_provider: Any = None,
    registry: ProviderRegistry | None = None,
) -> list[UnspentOutput]:
    if not address:
        raise ValidationError("Must specify the address.")
    provider = _lookup_provider(Operation.UTXO, network, utxo_provider, registry)
    return _coerce_utxos(provider.get_utxos(address))


# ---------------------------------------------------------------------------
# Environment configuration
# ---------------------------------------------------------------------------


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in _FALSE_WORDS


@dataclass
class PaymentConfig:
    """
    Payment defaults sourced from environment variables or a .env file.

    - BTC_PRIVATE_KEY: WIF key used to sign (needed for sending only).
    - BTC_FROM_ADDRESS: spending address; defaults to the key's P2PKH address.
    - BTC_NETWORK: "mainnet" or "testnet"; inferred from the WIF prefix if unset.
    - BTC_FEE: fee tier (fastest, halfHour, hour) or a literal sat/byte rate.
    - BTC_DRY_RUN: defaults to true; "false", "0", "no", "off" disable it.
    - BTC_EMPTY_WALLET: send change to the recipient (default false).
    - BTC_FEES_PROVIDER, BTC_UTXO_PROVIDER, BTC_PUSHTX_PROVIDER,
      BTC_BALANCE_PROVIDER, BTC_TXN_INFO_PROVIDER: provider names.
    - BTC_HTTP_TIMEOUT: seconds per provider HTTP request (default 10).
    - BTC_LOG_LEVEL: loguru level for the server (default INFO).
    """

    network: BTCNetwork
    priv_key_wif: str | None = field(default=None, repr=False)
    from_address: str | None = None
    fee: FeeSpec = field(default_factory=lambda: NamedTier(FeeTier.FASTEST))
    dry_run_default: bool = True
    empty_wallet: bool = False
    fees_provider: str | None = None
    utxo_provider: str | None = None
    pushtx_provider: str | None = None
    balance_provider: str | None = None
    txn_info_provider: str | None = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> PaymentConfig:
        private_key = (os.getenv("BTC_PRIVATE_KEY") or "").strip() or None

        # Determine network:
        # 1) BTC_NETWORK, if provided and valid.
        # 2) Infer from WIF prefix if BTC_PRIVATE_KEY is set.
        # 3) Default to mainnet.
        raw_network_env = os.getenv("BTC_NETWORK")
        if raw_network_env:
            raw_network = raw_network_env.strip().lower()
            if raw_network not in NETWORKS:
                raise PaymentConfigError(
                    f"Invalid BTC_NETWORK={raw_network_env!r}. Expected 'mainnet' or 'testnet'."
                )
            network: BTCNetwork = "mainnet" if raw_network == "mainnet" else "testnet"
        elif private_key and private_key[0] in {"9", "c"}:
            network = "testnet"
        else:
            network = "mainnet"

        from_address = (os.getenv("BTC_FROM_ADDRESS") or "").strip() or None
        if private_key and not from_address:
            try:
                from_address = _make_key_from_wif(private_key, network).address
            except ValidationError as exc:
                raise PaymentConfigError(f"BTC_PRIVATE_KEY is unusable: {exc}") from exc

        try:
            fee = parse_fee_spec(os.getenv("BTC_FEE", "fastest").strip() or "fastest")
        except ValidationError as exc:
            raise PaymentConfigError(f"Invalid BTC_FEE: {exc}") from exc

        timeout_raw = os.getenv("BTC_HTTP_TIMEOUT")
        http_timeout = DEFAULT_HTTP_TIMEOUT
        if timeout_raw is not None and timeout_raw.strip():
            try:
                http_timeout = float(timeout_raw)
            except ValueError as exc:
                raise PaymentConfigError(
                    f"Invalid BTC_HTTP_TIMEOUT={timeout_raw!r}. Expected seconds."
                ) from exc
            if http_timeout <= 0:
                raise PaymentConfigError("BTC_HTTP_TIMEOUT must be greater than zero.")

        def provider_name(var: str) -> str | None:
            return (os.getenv(var) or "").strip() or None

        return cls(
            network=network,
            priv_key_wif=private_key,
            from_address=from_address,
            fee=fee,
            dry_run_default=_env_flag("BTC_DRY_RUN", True),
            empty_wallet=_env_flag("BTC_EMPTY_WALLET", False),
            fees_provider=provider_name("BTC_FEES_PROVIDER"),
            utxo_provider=provider_name("BTC_UTXO_PROVIDER"),
            pushtx_provider=provider_name("BTC_PUSHTX_PROVIDER"),
            balance_provider=provider_name("BTC_BALANCE_PROVIDER"),
            txn_info_provider=provider_name("BTC_TXN_INFO_PROVIDER"),
            http_timeout=http_timeout,
            log_level=(os.getenv("BTC_LOG_LEVEL") or "INFO").strip().upper(),
        )

    def registry(self) -> ProviderRegistry:
        return build_default_registry(timeout=self.http_timeout)

    def request_options(
        self, to_address: str, amount_sats: int, **overrides: Any
    ) -> dict[str, Any]:
        if not self.priv_key_wif:
            raise PaymentConfigError(
                "No key material configured. Set BTC_PRIVATE_KEY (WIF) in your "
                "environment or .env file."
            )
        options: dict[str, Any] = {
            "from_address": self.from_address,
            "to_address": to_address,
            "amount_sats": amount_sats,
            "priv_key_wif": self.priv_key_wif,
            "network": self.network,
            "fee": self.fee,
            "fees_provider": self.fees_provider,
            "utxo_provider": self.utxo_provider,
            "pushtx_provider": self.pushtx_provider,
            "dry_run": self.dry_run_default,
            "empty_wallet": self.empty_wallet,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return options
