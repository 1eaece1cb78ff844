#!/usr/bin/env python3
"""
MCP server for single-recipient BTC payments.

Wraps btc_payment.py as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

REPO_ROOT = Path(__file__).resolve().parent
load_dotenv(REPO_ROOT / ".env")

from btc_payment import (  # noqa: E402
    PaymentConfig,
    SignedTransaction,
    get_balance,
    get_transaction_info,
    get_user_txns,
    parse_fee_spec,
    resolve_fee_rate,
    send_transaction,
)
from btc_providers import Operation  # noqa: E402

app = Server("btc_payment")


def _error_response(message: str) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": False, "error": message}))]


def _ok_response(result: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": True, **result}, default=str))]


def _parse_amount_sats(value: Any) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError("Invalid amount_sats. Must be a whole number of satoshis.")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid amount_sats. Must be an integer.") from exc
    if parsed <= 0:
        raise ValueError("Invalid amount_sats. Must be greater than zero.")
    return parsed


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="btc_payment_get_balance",
            description="Return the confirmed balance (6+ confirmations) of an address in satoshis.",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Address to query (defaults to the configured sender)",
                    },
                },
            },
        ),
        Tool(
            name="btc_payment_get_fee_rate",
            description="Resolve a fee tier (fastest, halfHour, hour) to sat/byte.",
            inputSchema={
                "type": "object",
                "properties": {
                    "fee": {"type": "string", "description": "Fee tier name"},
                },
            },
        ),
        Tool(
            name="btc_payment_list_utxos",
            description="List the unspent outputs of an address in provider order.",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Address to query (defaults to the configured sender)",
                    },
                },
            },
        ),
        Tool(
            name="btc_payment_get_transaction",
            description="Look up a transaction by txid.",
            inputSchema={
                "type": "object",
                "properties": {
                    "txid": {"type": "string", "description": "Transaction hash"},
                },
                "required": ["txid"],
            },
        ),
        Tool(
            name="btc_payment_send",
            description=(
                "Send a BTC payment from the configured wallet. "
                "Dry run by default unless BTC_DRY_RUN is disabled."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "to_address": {"type": "string", "description": "Recipient address"},
                    "amount_sats": {
                        "type": "integer",
                        "description": "Amount to send in satoshis (fee is deducted from it)",
                    },
                    "fee": {
                        "type": ["string", "integer"],
                        "description": "Fee tier name or literal sat/byte rate",
                    },
                    "dry_run": {
                        "type": "boolean",
                        "description": "If true, build and sign but do not broadcast",
                    },
                    "empty_wallet": {
                        "type": "boolean",
                        "description": "If true, send change to the recipient too",
                    },
                },
                "required": ["to_address", "amount_sats"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "btc_payment_get_balance":
        return await _handle_get_balance(arguments)
    if name == "btc_payment_get_fee_rate":
        return await _handle_get_fee_rate(arguments)
    if name == "btc_payment_list_utxos":
        return await _handle_list_utxos(arguments)
    if name == "btc_payment_get_transaction":
        return await _handle_get_transaction(arguments)
    if name == "btc_payment_send":
        return await _handle_send(arguments)

    return _error_response(f"Unknown tool: {name}")


def _address_or_sender(arguments: dict[str, Any], cfg: PaymentConfig) -> str:
    address = (arguments.get("address") or "").strip() or cfg.from_address
    if not address:
        raise ValueError("Missing address. Provide address or set BTC_FROM_ADDRESS.")
    return address


async def _handle_get_balance(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        cfg = await asyncio.to_thread(PaymentConfig.from_env)
        address = _address_or_sender(arguments, cfg)
        balance = await asyncio.to_thread(
            get_balance, address, cfg.network, cfg.balance_provider, cfg.registry()
        )
        return _ok_response({"address": address, "balance_sats": balance, "network": cfg.network})
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_get_fee_rate(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        cfg = await asyncio.to_thread(PaymentConfig.from_env)
        fee = arguments.get("fee")
        spec = cfg.fee if fee is None else parse_fee_spec(fee)
        provider = cfg.registry().resolve(Operation.FEES, cfg.network, cfg.fees_provider)
        rate = await asyncio.to_thread(resolve_fee_rate, spec, provider)
        return _ok_response({"sat_per_byte": rate, "network": cfg.network})
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_list_utxos(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        cfg = await asyncio.to_thread(PaymentConfig.from_env)
        address = _address_or_sender(arguments, cfg)
        utxos = await asyncio.to_thread(
            get_user_txns, address, cfg.network, cfg.utxo_provider, cfg.registry()
        )
        return _ok_response(
            {
                "address": address,
                "network": cfg.network,
                "count": len(utxos),
                "total_sats": sum(u.value_sats for u in utxos),
                "utxos": [u.to_dict() for u in utxos],
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_get_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    txid = (arguments.get("txid") or "").strip()
    if not txid:
        return _error_response("Missing txid.")

    try:
        cfg = await asyncio.to_thread(PaymentConfig.from_env)
        info = await asyncio.to_thread(
            get_transaction_info, txid, cfg.network, cfg.txn_info_provider, cfg.registry()
        )
        return _ok_response({"txid": txid, "network": cfg.network, "transaction": info})
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_send(arguments: dict[str, Any]) -> List[TextContent]:
    to_address = (arguments.get("to_address") or "").strip()
    if not to_address:
        return _error_response("Missing to_address.")
    if arguments.get("amount_sats") is None:
        return _error_response("Missing amount_sats.")

    try:
        amount_sats = _parse_amount_sats(arguments["amount_sats"])
        cfg = await asyncio.to_thread(PaymentConfig.from_env)
        options = cfg.request_options(
            to_address,
            amount_sats,
            fee=arguments.get("fee"),
            dry_run=arguments.get("dry_run"),
            empty_wallet=arguments.get("empty_wallet"),
        )
        result = await asyncio.to_thread(send_transaction, options, cfg.registry())
        if isinstance(result, SignedTransaction):
            return _ok_response({"dry_run": True, **result.to_dict()})
        return _ok_response({"dry_run": False, "network": cfg.network, "response": result})
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"btc_payment_send failed: {exc}")
        return _error_response(str(exc))


async def main() -> None:
    cfg = PaymentConfig.from_env()
    # stdout carries the MCP protocol; logs go to stderr.
    logger.remove()
    logger.add(sys.stderr, level=cfg.log_level)
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
