"""Unsigned contract calls for wallet and frame driven actions."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from app.core.config import Settings
from app.schemas import ContractCall, FrameTransaction, FrameTxParams, TxCallList
from integrations.abi import PREDICTION_MARKET_ABI
from integrations.ledger import LedgerClient, LedgerError, parse_usdc

MIN_BET_USDC = Decimal("1")
MAX_BET_USDC = Decimal("500")

FRAME_ACTIONS = {"bet", "claim"}


class TransactionRejected(ValueError):
    """Raised when a requested call would certainly fail on chain."""


def _function_abi(name: str) -> list[dict]:
    return [
        entry
        for entry in PREDICTION_MARKET_ABI
        if entry.get("type") == "function" and entry.get("name") == name
    ]


class TransactionBuilder:
    def __init__(self, ledger: LedgerClient, settings: Settings) -> None:
        self._ledger = ledger
        self._settings = settings

    def _bet_amount(self, amount: str | None) -> int:
        text = (amount or self._settings.default_bet_amount_usdc).strip()
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise TransactionRejected(f"Invalid bet amount: {text}") from exc
        if not MIN_BET_USDC <= value <= MAX_BET_USDC:
            raise TransactionRejected(f"Bet must be {MIN_BET_USDC}-{MAX_BET_USDC} USDC")
        try:
            return parse_usdc(text)
        except ValueError as exc:
            raise TransactionRejected(str(exc)) from exc

    def _call(self, function_name: str, args: list) -> ContractCall:
        return ContractCall(
            to=self._ledger.contract_address,
            data=self._ledger.encode_call(function_name, args),
            function_name=function_name,
        )

    def bet_calls(
        self, market_id: int, *, is_moon: bool, amount: str | None, now: datetime
    ) -> TxCallList:
        market = self._ledger.get_market(market_id)
        if market is None:
            raise TransactionRejected(f"Market {market_id} does not exist")
        if not market.is_open(now):
            raise TransactionRejected(f"Market {market_id} is closed for betting")
        if not self._settings.usdc_address:
            raise LedgerError("USDC_ADDRESS is not configured")

        amount_units = self._bet_amount(amount)
        approve = ContractCall(
            to=self._settings.usdc_address,
            data=self._ledger.encode_approve(self._settings.usdc_address, amount_units),
            function_name="approve",
        )
        action = self._call("betMoon" if is_moon else "betDoom", [market_id, amount_units])
        return TxCallList(chain_id=self._settings.chain_id, calls=[approve, action])

    def create_calls(
        self, cast_url: str, *, threshold: int, duration_hours: int, now: datetime
    ) -> TxCallList:
        if not 1 <= threshold <= self._settings.max_threshold:
            raise TransactionRejected(
                f"Threshold must be between 1 and {self._settings.max_threshold}"
            )
        if not 1 <= duration_hours <= self._settings.max_duration_hours:
            raise TransactionRejected(
                f"Duration must be between 1 and {self._settings.max_duration_hours} hours"
            )
        deadline = int((now + timedelta(hours=duration_hours)).timestamp())
        call = self._call("createMarket", [cast_url, threshold, deadline])
        return TxCallList(chain_id=self._settings.chain_id, calls=[call])

    def claim_calls(self, market_id: int) -> TxCallList:
        market = self._ledger.get_market(market_id)
        if market is None:
            raise TransactionRejected(f"Market {market_id} does not exist")
        if not market.resolved:
            raise TransactionRejected(f"Market {market_id} is not resolved yet")
        call = self._call("claimWinnings", [market_id])
        return TxCallList(chain_id=self._settings.chain_id, calls=[call])

    def frame_transaction(
        self, market_id: int, *, action: str, is_moon: bool = False
    ) -> FrameTransaction:
        """Single-call payload in the frame transaction format.

        Frames cannot chain an approval, so bets assume the wallet already
        granted the contract a USDC allowance.
        """

        if action not in FRAME_ACTIONS:
            raise TransactionRejected(f"Unsupported frame action: {action}")
        if action == "claim":
            function_name, args = "claimWinnings", [market_id]
        else:
            function_name = "betMoon" if is_moon else "betDoom"
            args = [market_id, self._bet_amount(None)]
        return FrameTransaction(
            chain_id=f"eip155:{self._settings.chain_id}",
            params=FrameTxParams(
                abi=_function_abi(function_name),
                to=self._ledger.contract_address,
                data=self._ledger.encode_call(function_name, args),
            ),
        )
