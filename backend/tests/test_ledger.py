from __future__ import annotations

import copy

import pytest
from web3 import Web3

from app.domain import Outcome
from integrations.abi import MARKET_SCHEMA, PREDICTION_MARKET_ABI, USER_BET_SCHEMA
from integrations.ledger import (
    LedgerClient,
    LedgerError,
    LedgerSchemaError,
    decode_struct,
    market_from_fields,
    parse_usdc,
)

CONTRACT = "0x" + "11" * 20
CREATOR = "0x" + "33" * 20

RAW_MARKET = (
    3,
    "https://warpcast.com/alice/0xa1b2c3d4",
    100,
    1_767_225_600,
    5_000_000,
    2_000_000,
    1,
    True,
    CREATOR,
)


def test_decode_struct_from_tuple():
    fields = decode_struct(RAW_MARKET, MARKET_SCHEMA, MARKET_SCHEMA)

    assert fields["castUrl"] == "https://warpcast.com/alice/0xa1b2c3d4"
    assert fields["totalDoomBets"] == 2_000_000


def test_decode_struct_from_mapping():
    raw = {"moonAmount": 1, "doomAmount": 2, "claimed": False, "extra": "ignored"}

    assert decode_struct(raw, USER_BET_SCHEMA, USER_BET_SCHEMA) == {
        "moonAmount": 1,
        "doomAmount": 2,
        "claimed": False,
    }


def test_decode_struct_rejects_layout_changes():
    with pytest.raises(LedgerSchemaError):
        decode_struct(RAW_MARKET[:-1], MARKET_SCHEMA, MARKET_SCHEMA)
    with pytest.raises(LedgerSchemaError):
        decode_struct({"moonAmount": 1}, USER_BET_SCHEMA, USER_BET_SCHEMA)
    with pytest.raises(LedgerSchemaError):
        renamed = ("id", "url") + MARKET_SCHEMA[2:]
        decode_struct(RAW_MARKET, MARKET_SCHEMA, renamed)
    with pytest.raises(LedgerSchemaError):
        decode_struct("not a struct", MARKET_SCHEMA, MARKET_SCHEMA)


def test_market_from_fields():
    market = market_from_fields(decode_struct(RAW_MARKET, MARKET_SCHEMA, MARKET_SCHEMA))

    assert market.market_id == 3
    assert market.outcome is Outcome.MOON
    assert market.resolved is True
    assert market.deadline_at.year == 2026


def test_market_from_fields_treats_zero_id_as_missing():
    empty = (0, "", 0, 0, 0, 0, 0, False, "0x" + "00" * 20)

    assert market_from_fields(decode_struct(empty, MARKET_SCHEMA, MARKET_SCHEMA)) is None


def test_market_from_fields_rejects_unknown_outcome():
    raw = RAW_MARKET[:6] + (9,) + RAW_MARKET[7:]

    with pytest.raises(LedgerSchemaError):
        market_from_fields(decode_struct(raw, MARKET_SCHEMA, MARKET_SCHEMA))


@pytest.mark.parametrize(
    ("amount", "expected"),
    [("1", 1_000_000), ("0.5", 500_000), ("12.345678", 12_345_678), (3, 3_000_000)],
)
def test_parse_usdc(amount, expected):
    assert parse_usdc(amount) == expected


@pytest.mark.parametrize("amount", ["", "abc", "1.2345678", "-1", "1.2.3"])
def test_parse_usdc_rejects_invalid_amounts(amount):
    with pytest.raises(ValueError):
        parse_usdc(amount)


def test_client_requires_contract_address():
    with pytest.raises(LedgerError):
        LedgerClient(contract_address=None, chain_id=84532, web3=Web3())


def test_client_rejects_abi_with_different_market_layout():
    abi = copy.deepcopy(PREDICTION_MARKET_ABI)
    for entry in abi:
        if entry.get("name") == "getMarket":
            entry["outputs"][0]["components"].pop()

    with pytest.raises(LedgerSchemaError):
        LedgerClient(contract_address=CONTRACT, chain_id=84532, web3=Web3(), abi=abi)


def test_client_encodes_calls_without_network():
    client = LedgerClient(contract_address=CONTRACT, chain_id=84532, web3=Web3())

    calldata = client.encode_call("betMoon", [1, 1_000_000])
    approve = client.encode_approve("0x" + "22" * 20, 1_000_000)

    assert calldata.startswith("0x") and len(calldata) == 2 + 8 + 64 * 2
    assert approve.startswith("0x095ea7b3")
    assert client.signer_address is None


def test_client_refuses_to_sign_without_key():
    client = LedgerClient(contract_address=CONTRACT, chain_id=84532, web3=Web3())

    with pytest.raises(LedgerError):
        client.resolve_market(1, Outcome.MOON)


def test_client_only_resolves_to_moon_or_doom():
    client = LedgerClient(contract_address=CONTRACT, chain_id=84532, web3=Web3())

    with pytest.raises(ValueError):
        client.resolve_market(1, Outcome.CANCELLED)
