import sys
from pathlib import Path

import pytest
from bit import Key, PrivateKeyTestnet
from bit.transaction import calc_txid, deserialize

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import btc_payment  # noqa: E402
from btc_payment import (  # noqa: E402
    AssembledTransaction,
    LiteralRate,
    NamedTier,
    PaymentConfig,
    PaymentRequest,
    SelectionResult,
    SignedTransaction,
    TxOutput,
    assemble,
    estimate_fee,
    estimate_size,
    get_balance,
    get_transaction_info,
    get_user_txns,
    parse_fee_spec,
    resolve_fee_rate,
    select_coins,
    send_transaction,
    sign,
)
from btc_providers import (  # noqa: E402
    BalanceProvider,
    FeeRateProvider,
    Operation,
    ProviderRegistry,
    PushTxProvider,
    TxnInfoProvider,
    UtxoProvider,
)
from btc_types import (  # noqa: E402
    FeeExceedsAmountError,
    FeeTier,
    InsufficientFundsError,
    PaymentConfigError,
    ProviderError,
    UnspentOutput,
    ValidationError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TXID_A = "a" * 64
TXID_B = "b" * 64
TXID_C = "c" * 64

SENDER = PrivateKeyTestnet()
RECIPIENT = PrivateKeyTestnet()


class FakeFees(FeeRateProvider):
    def __init__(self, rate=1):
        self.rate = rate
        self.calls = []

    def get_fee_rate(self, tier):
        self.calls.append(tier)
        return self.rate


class FakeUtxos(UtxoProvider):
    def __init__(self, utxos):
        self.utxos = utxos
        self.calls = []

    def get_utxos(self, address):
        self.calls.append(address)
        return list(self.utxos)


class FakePush(PushTxProvider):
    def __init__(self):
        self.calls = []

    def push_tx(self, raw_hex):
        self.calls.append(raw_hex)
        return {"tx": {"hash": "pushed"}}


class FakeBalance(BalanceProvider):
    def get_balance(self, address):
        return 123456


class FakeTxnInfo(TxnInfoProvider):
    def get_txn_info(self, txid):
        return {"txid": txid, "status": {"confirmed": True}}


def _utxo(value, confirmations=6, txid=TXID_A, vout=0):
    return UnspentOutput(txid=txid, vout=vout, value_sats=value, confirmations=confirmations)


def _registry(fees, utxos, push, network="testnet"):
    providers = {
        (Operation.FEES, network): {"fake": fees},
        (Operation.UTXO, network): {"fake": utxos},
        (Operation.PUSHTX, network): {"fake": push},
        (Operation.BALANCE, network): {"fake": FakeBalance()},
        (Operation.TXN_INFO, network): {"fake": FakeTxnInfo()},
    }
    defaults = {key: "fake" for key in providers}
    return ProviderRegistry(providers, defaults)


def _options(**overrides):
    options = {
        "from_address": SENDER.address,
        "to_address": RECIPIENT.address,
        "amount_sats": 40000,
        "priv_key_wif": SENDER.to_wif(),
        "network": "testnet",
        "fee": 1,
        "dry_run": True,
    }
    options.update(overrides)
    return options


def _output_values(raw_hex):
    tx = deserialize(raw_hex)
    return [int.from_bytes(out.amount, byteorder="little") for out in tx.TxOut]


# ---------------------------------------------------------------------------
# Fee specification and resolution
# ---------------------------------------------------------------------------


def test_parse_fee_spec_literal_and_tiers():
    assert parse_fee_spec(5) == LiteralRate(5)
    assert parse_fee_spec("12") == LiteralRate(12)
    assert parse_fee_spec("fastest") == NamedTier(FeeTier.FASTEST)
    assert parse_fee_spec("halfHour") == NamedTier(FeeTier.HALF_HOUR)
    assert parse_fee_spec("half-hour") == NamedTier(FeeTier.HALF_HOUR)
    assert parse_fee_spec(FeeTier.HOUR) == NamedTier(FeeTier.HOUR)


@pytest.mark.parametrize("value", ["weekly", True, -3, 2.5, None, "-1"])
def test_parse_fee_spec_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_fee_spec(value)


def test_parse_fee_spec_accepts_zero_rate():
    assert parse_fee_spec(0) == LiteralRate(0)
    assert parse_fee_spec("0") == LiteralRate(0)


def test_literal_rate_never_touches_provider():
    fees = FakeFees(rate=99)
    assert resolve_fee_rate(LiteralRate(5), fees) == 5
    assert fees.calls == []


def test_named_tier_calls_provider_once():
    fees = FakeFees(rate=17)
    assert resolve_fee_rate(NamedTier(FeeTier.HOUR), fees) == 17
    assert fees.calls == [FeeTier.HOUR]


def test_provider_failure_propagates_unmodified():
    boom = ProviderError("fees down")

    class BrokenFees(FeeRateProvider):
        def get_fee_rate(self, tier):
            raise boom

    with pytest.raises(ProviderError) as excinfo:
        resolve_fee_rate(NamedTier(FeeTier.FASTEST), BrokenFees())
    assert excinfo.value is boom


# ---------------------------------------------------------------------------
# Coin selection
# ---------------------------------------------------------------------------


def test_select_coins_first_fit_in_provider_order():
    utxos = [_utxo(30000, txid=TXID_A), _utxo(50000, txid=TXID_B), _utxo(100000, txid=TXID_C)]
    result = select_coins(utxos, 60000)
    assert [u.txid for u in result.selected] == [TXID_A, TXID_B]
    assert result.total_input_sats == 80000


def test_select_coins_skips_shallow_confirmations():
    utxos = [_utxo(200000, confirmations=5, txid=TXID_A), _utxo(100000, txid=TXID_B)]
    result = select_coins(utxos, 40000)
    assert [u.txid for u in result.selected] == [TXID_B]
    assert result.total_input_sats == 100000


def test_select_coins_insufficient_reports_totals():
    with pytest.raises(InsufficientFundsError) as excinfo:
        select_coins([_utxo(100000)], 150000)
    assert excinfo.value.available == 100000
    assert excinfo.value.required == 150000
    assert "Available: 100000" in str(excinfo.value)
    assert "Required: 150000" in str(excinfo.value)


def test_select_coins_unconfirmed_only_is_insufficient():
    with pytest.raises(InsufficientFundsError) as excinfo:
        select_coins([_utxo(500000, confirmations=5)], 1000)
    assert excinfo.value.available == 0


# ---------------------------------------------------------------------------
# Fee estimation
# ---------------------------------------------------------------------------


def test_estimate_size_formula():
    assert estimate_size(1, 2) == 259
    assert estimate_size(1, 1) == 225
    assert estimate_size(2, 1) == 406


def test_estimate_fee_scales_with_rate():
    assert estimate_fee(1, 2, 1) == 259
    assert estimate_fee(1, 2, 5) == 1295


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def _request(**overrides):
    reg = _registry(FakeFees(), FakeUtxos([]), FakePush())
    return PaymentRequest.from_options(_options(**overrides), reg)


def test_assemble_with_change_to_sender():
    selection = SelectionResult(selected=[_utxo(100000)], total_input_sats=100000)
    assembled = assemble(selection, _request(), 259)
    assert assembled.outputs == [
        TxOutput(RECIPIENT.address, 39741),
        TxOutput(SENDER.address, 60000),
    ]
    assert assembled.total_input_sats - assembled.total_output_sats == assembled.fee_sats


def test_assemble_empty_wallet_redirects_change():
    selection = SelectionResult(selected=[_utxo(100000)], total_input_sats=100000)
    assembled = assemble(selection, _request(empty_wallet=True), 259)
    assert [o.address for o in assembled.outputs] == [RECIPIENT.address, RECIPIENT.address]
    assert assembled.outputs[1].value_sats == 60000


def test_assemble_exact_amount_has_no_change_output():
    selection = SelectionResult(selected=[_utxo(40000)], total_input_sats=40000)
    assembled = assemble(selection, _request(), 225)
    assert assembled.outputs == [TxOutput(RECIPIENT.address, 39775)]
    assert assembled.total_input_sats - assembled.total_output_sats == 225


def test_assemble_rejects_fee_equal_to_amount():
    selection = SelectionResult(selected=[_utxo(100000)], total_input_sats=100000)
    with pytest.raises(FeeExceedsAmountError) as excinfo:
        assemble(selection, _request(amount_sats=259), 259)
    assert excinfo.value.fee == 259
    assert excinfo.value.amount == 259


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def _assembled(from_address, values=(39741, 60000)):
    outputs = [TxOutput(RECIPIENT.address, values[0])]
    if len(values) > 1:
        outputs.append(TxOutput(from_address, values[1]))
    return AssembledTransaction(inputs=[_utxo(100000)], outputs=outputs, fee_sats=259)


def test_sign_p2pkh_is_deterministic():
    assembled = _assembled(SENDER.address)
    first = sign(assembled, SENDER.to_wif(), "testnet", SENDER.address)
    second = sign(assembled, SENDER.to_wif(), "testnet", SENDER.address)
    assert first.raw_hex == second.raw_hex
    assert first.txid == calc_txid(first.raw_hex)
    assert len(first.txid) == 64
    assert _output_values(first.raw_hex) == [39741, 60000]


def test_sign_nested_segwit_address():
    assembled = _assembled(SENDER.segwit_address)
    signed = sign(assembled, SENDER.to_wif(), "testnet", SENDER.segwit_address)
    assert _output_values(signed.raw_hex) == [39741, 60000]
    assert signed.txid == calc_txid(signed.raw_hex)


def test_sign_native_segwit_address():
    from bitcoin.core import CTransaction, b2lx

    from_address = btc_payment._p2wpkh_address(SENDER.public_key, "testnet")
    assert from_address.startswith("tb1q")
    assembled = _assembled(from_address)
    signed = sign(assembled, SENDER.to_wif(), "testnet", from_address)

    tx = CTransaction.deserialize(bytes.fromhex(signed.raw_hex))
    assert [out.nValue for out in tx.vout] == [39741, 60000]
    assert not tx.wit.is_null()
    assert signed.txid == b2lx(tx.GetTxid())


def test_sign_native_segwit_mainnet_and_testnet_in_parallel():
    from concurrent.futures import ThreadPoolExecutor

    from bitcoin.core import CTransaction

    mainnet_key = Key()
    mainnet_recipient = btc_payment._p2wpkh_address(Key().public_key, "mainnet")
    testnet_recipient = btc_payment._p2wpkh_address(RECIPIENT.public_key, "testnet")
    jobs = {
        "mainnet": (mainnet_key, mainnet_recipient),
        "testnet": (SENDER, testnet_recipient),
    }

    def sign_many(network):
        key, recipient = jobs[network]
        from_address = btc_payment._p2wpkh_address(key.public_key, network)
        assembled = AssembledTransaction(
            inputs=[_utxo(100000)],
            outputs=[TxOutput(recipient, 39741), TxOutput(from_address, 60000)],
            fee_sats=259,
        )
        for _ in range(300):
            signed = sign(assembled, key.to_wif(), network, from_address)
            tx = CTransaction.deserialize(bytes.fromhex(signed.raw_hex))
            assert [out.nValue for out in tx.vout] == [39741, 60000]
        return from_address

    previous = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    try:
        with ThreadPoolExecutor(max_workers=2) as pool:
            mainnet_from, testnet_from = pool.map(sign_many, ["mainnet", "testnet"])
    finally:
        sys.setswitchinterval(previous)

    assert mainnet_from.startswith("bc1q")
    assert testnet_from.startswith("tb1q")


def test_sign_rejects_unparseable_output_address():
    from_address = btc_payment._p2wpkh_address(SENDER.public_key, "testnet")
    assembled = AssembledTransaction(
        inputs=[_utxo(100000)],
        outputs=[TxOutput("not-an-address", 39741)],
        fee_sats=259,
    )
    with pytest.raises(ValidationError):
        sign(assembled, SENDER.to_wif(), "testnet", from_address)


def test_sign_rejects_key_for_other_address():
    assembled = _assembled(RECIPIENT.address)
    with pytest.raises(ValidationError):
        sign(assembled, SENDER.to_wif(), "testnet", RECIPIENT.address)


def test_sign_rejects_wif_for_other_network():
    mainnet_key = Key()
    assembled = _assembled(SENDER.address)
    with pytest.raises(ValidationError):
        sign(assembled, mainnet_key.to_wif(), "testnet", SENDER.address)


def test_sign_rejects_invalid_wif():
    with pytest.raises(ValidationError):
        sign(_assembled(SENDER.address), "not-a-wif", "testnet", SENDER.address)


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("missing", ["from_address", "to_address", "amount_sats", "priv_key_wif"])
def test_missing_required_option_fails_before_network(missing):
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    options = _options(fee="fastest")
    del options[missing]
    with pytest.raises(ValidationError):
        send_transaction(options, _registry(fees, utxos, push))
    assert fees.calls == []
    assert utxos.calls == []
    assert push.calls == []


@pytest.mark.parametrize("amount", [0, -5, "40000", 1.5, True])
def test_invalid_amount_rejected(amount):
    with pytest.raises(ValidationError):
        _request(amount_sats=amount)


def test_unknown_network_rejected():
    with pytest.raises(ValidationError):
        _request(network="regtest")


def test_unknown_provider_name_rejected():
    with pytest.raises(ValidationError):
        _request(utxo_provider="nope")


def test_defaults_applied():
    reg = _registry(FakeFees(), FakeUtxos([]), FakePush(), network="mainnet")
    options = _options()
    for key in ("network", "fee", "dry_run"):
        del options[key]
    request = PaymentRequest.from_options(options, reg)
    assert request.network == "mainnet"
    assert request.fee == NamedTier(FeeTier.FASTEST)
    assert request.dry_run is False
    assert request.empty_wallet is False


@pytest.mark.parametrize(
    "value,expected",
    [("false", False), ("False", False), ("0", False), ("off", False), ("true", True), ("yes", True)],
)
def test_string_flags_are_parsed(value, expected):
    request = _request(dry_run=value, empty_wallet=value)
    assert request.dry_run is expected
    assert request.empty_wallet is expected


@pytest.mark.parametrize("value", ["maybe", 2, 1.0, []])
def test_unrecognised_flag_rejected(value):
    with pytest.raises(ValidationError):
        _request(dry_run=value)


def test_string_false_dry_run_submits():
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(dry_run="false"), _registry(fees, utxos, push))
    assert result == {"tx": {"hash": "pushed"}}
    assert len(push.calls) == 1


def test_provider_object_override():
    custom = FakeUtxos([])
    request = _request(utxo_provider=custom)
    assert request.utxo_provider is custom


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


def test_scenario_dry_run_with_change():
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(), _registry(fees, utxos, push))

    assert isinstance(result, SignedTransaction)
    assert result.assembled.fee_sats == 259
    assert result.assembled.outputs == [
        TxOutput(RECIPIENT.address, 39741),
        TxOutput(SENDER.address, 60000),
    ]
    assert result.assembled.total_output_sats == 99741
    assert _output_values(result.raw_hex) == [39741, 60000]
    assert push.calls == []
    assert utxos.calls == [SENDER.address]


def test_scenario_insufficient_funds():
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    with pytest.raises(InsufficientFundsError) as excinfo:
        send_transaction(_options(amount_sats=150000), _registry(fees, utxos, push))
    assert excinfo.value.available == 100000
    assert excinfo.value.required == 150000
    assert push.calls == []


def test_scenario_empty_wallet():
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(empty_wallet=True), _registry(fees, utxos, push))
    assert result.assembled.outputs == [
        TxOutput(RECIPIENT.address, 39741),
        TxOutput(RECIPIENT.address, 60000),
    ]


def test_scenario_submission_returns_provider_response():
    fees, utxos, push = FakeFees(), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(dry_run=False), _registry(fees, utxos, push))
    assert result == {"tx": {"hash": "pushed"}}
    assert len(push.calls) == 1
    assert _output_values(push.calls[0]) == [39741, 60000]


def test_scenario_literal_fee_bypasses_provider():
    fees, utxos, push = FakeFees(rate=99), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(fee=5), _registry(fees, utxos, push))
    assert fees.calls == []
    assert result.assembled.fee_sats == 259 * 5


def test_scenario_zero_literal_fee():
    fees, utxos, push = FakeFees(rate=99), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(fee=0), _registry(fees, utxos, push))
    assert fees.calls == []
    assert result.assembled.fee_sats == 0
    assert result.assembled.outputs == [
        TxOutput(RECIPIENT.address, 40000),
        TxOutput(SENDER.address, 60000),
    ]
    assert _output_values(result.raw_hex) == [40000, 60000]


def test_scenario_named_tier_uses_provider():
    fees, utxos, push = FakeFees(rate=3), FakeUtxos([_utxo(100000)]), FakePush()
    result = send_transaction(_options(fee="hour"), _registry(fees, utxos, push))
    assert fees.calls == [FeeTier.HOUR]
    assert result.assembled.fee_sats == 259 * 3


def test_scenario_shallow_utxo_excluded():
    utxos = FakeUtxos([_utxo(500000, confirmations=5, txid=TXID_A), _utxo(100000, txid=TXID_B)])
    result = send_transaction(_options(), _registry(FakeFees(), utxos, FakePush()))
    assert [u.txid for u in result.assembled.inputs] == [TXID_B]


def test_fee_exceeding_amount_aborts_before_signing(monkeypatch):
    def fail_sign(*_args, **_kwargs):
        raise AssertionError("sign must not be called")

    monkeypatch.setattr(btc_payment, "sign", fail_sign)
    push = FakePush()
    with pytest.raises(FeeExceedsAmountError):
        send_transaction(
            _options(amount_sats=200, dry_run=False),
            _registry(FakeFees(), FakeUtxos([_utxo(100000)]), push),
        )
    assert push.calls == []


def test_utxo_dicts_from_custom_provider_are_accepted():
    class DictUtxos(UtxoProvider):
        def get_utxos(self, address):
            return [{"txid": TXID_A, "vout": 1, "satoshis": 100000, "confirmations": 10}]

    result = send_transaction(_options(utxo_provider=DictUtxos()), _registry(FakeFees(), FakeUtxos([]), FakePush()))
    assert result.assembled.inputs == [_utxo(100000, confirmations=10, vout=1)]


def test_utxo_failure_propagates_with_named_tier():
    boom = ProviderError("utxo backend down")

    class BrokenUtxos(UtxoProvider):
        def get_utxos(self, address):
            raise boom

    with pytest.raises(ProviderError) as excinfo:
        send_transaction(
            _options(fee="fastest", utxo_provider=BrokenUtxos()),
            _registry(FakeFees(), FakeUtxos([]), FakePush()),
        )
    assert excinfo.value is boom


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------


def test_read_operations_use_registry():
    reg = _registry(FakeFees(), FakeUtxos([_utxo(100000)]), FakePush())
    assert get_balance(SENDER.address, "testnet", registry=reg) == 123456
    assert get_user_txns(SENDER.address, "testnet", registry=reg) == [_utxo(100000)]
    info = get_transaction_info(TXID_A, "testnet", registry=reg)
    assert info["txid"] == TXID_A


def test_read_operations_require_arguments():
    reg = _registry(FakeFees(), FakeUtxos([]), FakePush())
    with pytest.raises(ValidationError):
        get_balance("", "testnet", registry=reg)
    with pytest.raises(ValidationError):
        get_transaction_info("", "testnet", registry=reg)
    with pytest.raises(ValidationError):
        get_user_txns("", "testnet", registry=reg)


# ---------------------------------------------------------------------------
# Environment configuration
# ---------------------------------------------------------------------------

_ENV_VARS = (
    "BTC_PRIVATE_KEY",
    "BTC_FROM_ADDRESS",
    "BTC_NETWORK",
    "BTC_FEE",
    "BTC_DRY_RUN",
    "BTC_EMPTY_WALLET",
    "BTC_FEES_PROVIDER",
    "BTC_UTXO_PROVIDER",
    "BTC_PUSHTX_PROVIDER",
    "BTC_BALANCE_PROVIDER",
    "BTC_TXN_INFO_PROVIDER",
    "BTC_HTTP_TIMEOUT",
    "BTC_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_config_defaults(clean_env):
    cfg = PaymentConfig.from_env()
    assert cfg.network == "mainnet"
    assert cfg.priv_key_wif is None
    assert cfg.fee == NamedTier(FeeTier.FASTEST)
    assert cfg.dry_run_default is True
    assert cfg.empty_wallet is False


def test_config_infers_testnet_and_sender_from_wif(clean_env):
    clean_env.setenv("BTC_PRIVATE_KEY", SENDER.to_wif())
    clean_env.setenv("BTC_FEE", "7")
    clean_env.setenv("BTC_DRY_RUN", "off")
    clean_env.setenv("BTC_UTXO_PROVIDER", "mempool")
    cfg = PaymentConfig.from_env()
    assert cfg.network == "testnet"
    assert cfg.from_address == SENDER.address
    assert cfg.fee == LiteralRate(7)
    assert cfg.dry_run_default is False
    assert cfg.utxo_provider == "mempool"

    options = cfg.request_options(RECIPIENT.address, 1000, fee="hour")
    assert options["fee"] == "hour"
    assert options["dry_run"] is False
    assert options["from_address"] == SENDER.address


@pytest.mark.parametrize(
    "var,value",
    [("BTC_NETWORK", "regtest"), ("BTC_FEE", "weekly"), ("BTC_HTTP_TIMEOUT", "soon")],
)
def test_config_rejects_invalid_values(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(PaymentConfigError):
        PaymentConfig.from_env()


def test_config_request_options_require_key(clean_env):
    cfg = PaymentConfig.from_env()
    with pytest.raises(PaymentConfigError):
        cfg.request_options(RECIPIENT.address, 1000)
