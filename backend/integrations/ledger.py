"""web3.py wrapper around the prediction market contract."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from eth_account import Account
from loguru import logger
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.logs import DISCARD

from app.core.config import Settings
from app.domain import LedgerMarket, MarketCreatedEvent, Outcome, UserBet

from .abi import (
    ERC20_APPROVE_ABI,
    MARKET_SCHEMA,
    MARKET_SCHEMA_VERSION,
    PREDICTION_MARKET_ABI,
    USER_BET_SCHEMA,
    function_output_components,
)

USDC_DECIMALS = 6

# requests' transport errors derive from OSError; older providers raise ValueError for RPC errors.
_TRANSPORT_ERRORS = (Web3Exception, OSError, ValueError)


class LedgerError(RuntimeError):
    """Raised when a contract read or write cannot be completed."""


class LedgerSchemaError(LedgerError):
    """Raised when a returned struct does not match the expected field layout."""


def decode_struct(raw: Any, schema: Sequence[str], abi_fields: Sequence[str]) -> dict[str, Any]:
    """Map a returned struct onto ``schema`` by name.

    ``abi_fields`` are the component names published in the ABI; any
    difference from ``schema`` means the contract changed shape and the
    values cannot be trusted.
    """

    if tuple(abi_fields) != tuple(schema):
        raise LedgerSchemaError(
            f"ABI struct fields {tuple(abi_fields)} do not match schema {tuple(schema)}"
        )
    if isinstance(raw, Mapping):
        missing = [name for name in schema if name not in raw]
        if missing:
            raise LedgerSchemaError(f"struct is missing fields: {', '.join(missing)}")
        return {name: raw[name] for name in schema}
    if isinstance(raw, (list, tuple)):
        if len(raw) != len(schema):
            raise LedgerSchemaError(
                f"struct has {len(raw)} fields, schema expects {len(schema)}"
            )
        return dict(zip(schema, raw))
    raise LedgerSchemaError(f"cannot decode struct from {type(raw).__name__}")


def market_from_fields(fields: Mapping[str, Any]) -> LedgerMarket | None:
    market_id = int(fields["id"])
    if market_id == 0:
        return None
    try:
        outcome = Outcome(int(fields["outcome"]))
    except ValueError as exc:
        raise LedgerSchemaError(f"unknown outcome value {fields['outcome']!r}") from exc
    return LedgerMarket(
        market_id=market_id,
        cast_url=str(fields["castUrl"]),
        threshold=int(fields["threshold"]),
        deadline=int(fields["deadline"]),
        total_moon_bets=int(fields["totalMoonBets"]),
        total_doom_bets=int(fields["totalDoomBets"]),
        outcome=outcome,
        resolved=bool(fields["resolved"]),
        creator=str(fields["creator"]),
    )


def parse_usdc(amount: str | int | float) -> int:
    """Convert a human USDC amount into 6-decimal base units."""

    text = str(amount).strip()
    whole, _, fraction = text.partition(".")
    if text in {"", "."} or not (whole or "0").isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"invalid USDC amount: {amount!r}")
    if len(fraction) > USDC_DECIMALS:
        raise ValueError(f"USDC supports at most {USDC_DECIMALS} decimals")
    return int(whole or "0") * 10**USDC_DECIMALS + int(fraction.ljust(USDC_DECIMALS, "0"))


def receipt_tx_hash(receipt: Mapping[str, Any]) -> str:
    return Web3.to_hex(receipt["transactionHash"])


class LedgerClient:
    """Reads market state and submits settlement transactions."""

    def __init__(
        self,
        *,
        contract_address: str | None,
        rpc_url: str | None = None,
        chain_id: int,
        private_key: str | None = None,
        timeout: float = 30.0,
        receipt_timeout: float = 120.0,
        web3: Web3 | None = None,
        abi: list[dict] | None = None,
    ) -> None:
        if not contract_address:
            raise LedgerError("CONTRACT_ADDRESS is not configured")
        abi = abi or PREDICTION_MARKET_ABI
        self._market_fields = function_output_components(abi, "getMarket")
        self._user_bet_fields = function_output_components(abi, "getUserBet")
        if self._market_fields != MARKET_SCHEMA:
            raise LedgerSchemaError(
                f"contract ABI does not publish market schema v{MARKET_SCHEMA_VERSION}: "
                f"{self._market_fields}"
            )

        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract_address = Web3.to_checksum_address(contract_address)
        self._contract = self._web3.eth.contract(address=self.contract_address, abi=abi)
        self._account = Account.from_key(private_key) if private_key else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerClient":
        return cls(
            contract_address=settings.contract_address,
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            private_key=settings.admin_private_key,
            timeout=settings.rpc_timeout_seconds,
            receipt_timeout=settings.tx_receipt_timeout_seconds,
        )

    @property
    def signer_address(self) -> str | None:
        return self._account.address if self._account else None

    # ------------------------------------------------------------------
    # Reads

    def next_market_id(self) -> int:
        try:
            return int(self._contract.functions.nextMarketId().call())
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"failed to read nextMarketId: {exc}") from exc

    def market_count(self) -> int:
        return max(self.next_market_id() - 1, 0)

    def get_market(self, market_id: int) -> LedgerMarket | None:
        try:
            raw = self._contract.functions.getMarket(int(market_id)).call()
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"failed to read market {market_id}: {exc}") from exc
        fields = decode_struct(raw, MARKET_SCHEMA, self._market_fields)
        return market_from_fields(fields)

    def get_user_bet(self, market_id: int, address: str) -> UserBet:
        if not Web3.is_address(address):
            raise ValueError(f"Invalid Ethereum address: {address}")
        try:
            raw = self._contract.functions.getUserBet(
                int(market_id), Web3.to_checksum_address(address)
            ).call()
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"failed to read bet for {address} on {market_id}: {exc}") from exc
        fields = decode_struct(raw, USER_BET_SCHEMA, self._user_bet_fields)
        return UserBet(
            moon_amount=int(fields["moonAmount"]),
            doom_amount=int(fields["doomAmount"]),
            claimed=bool(fields["claimed"]),
        )

    # ------------------------------------------------------------------
    # Writes

    def resolve_market(self, market_id: int, outcome: Outcome) -> str:
        if outcome not in (Outcome.MOON, Outcome.DOOM):
            raise ValueError(f"cannot resolve market to {outcome!r}")
        receipt = self._transact(
            self._contract.functions.resolveMarket(int(market_id), int(outcome))
        )
        return receipt_tx_hash(receipt)

    def create_market(self, cast_url: str, threshold: int, deadline: int) -> dict[str, Any]:
        return self._transact(
            self._contract.functions.createMarket(cast_url, int(threshold), int(deadline))
        )

    def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        try:
            return self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"no receipt for {tx_hash}: {exc}") from exc

    def parse_market_created(self, receipt: Mapping[str, Any]) -> MarketCreatedEvent | None:
        events = self._contract.events.MarketCreated().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        args = events[0]["args"]
        return MarketCreatedEvent(
            market_id=int(args["marketId"]),
            cast_url=str(args["castUrl"]),
            threshold=int(args["threshold"]),
            deadline=int(args["deadline"]),
            creator=str(args["creator"]),
        )

    def _transact(self, function) -> dict[str, Any]:
        if self._account is None:
            raise LedgerError("ADMIN_PRIVATE_KEY is not configured; cannot sign transactions")
        address = self._account.address
        try:
            tx = function.build_transaction(
                {
                    "from": address,
                    "nonce": self._web3.eth.get_transaction_count(address, "pending"),
                    "chainId": self.chain_id,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("Ledger tx sent: {} {}", function.fn_name, Web3.to_hex(tx_hash))
            receipt = self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"{function.fn_name} transaction failed: {exc}") from exc
        if receipt["status"] != 1:
            raise LedgerError(f"{function.fn_name} transaction reverted: {Web3.to_hex(tx_hash)}")
        return receipt

    # ------------------------------------------------------------------
    # Unsigned calldata for wallet-driven actions

    def encode_call(self, function_name: str, args: Sequence[Any]) -> str:
        return self._contract.encode_abi(function_name, args=list(args))

    def encode_approve(self, token_address: str, amount: int) -> str:
        token = self._web3.eth.contract(
            address=Web3.to_checksum_address(token_address), abi=ERC20_APPROVE_ABI
        )
        return token.encode_abi("approve", args=[self.contract_address, int(amount)])
