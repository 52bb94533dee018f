"""Payment verifier — validates an on-chain USDC transfer to the merchant.

Input is the raw ``getTransaction`` JSON-RPC result (encoding "json",
legacy or v0 message). Checks, in order:
  1. meta present, no execution error
  2. an SPL token Transfer / TransferChecked instruction exists
  3. its destination is the merchant's associated token account
  4. the destination's post-balance mint is the expected mint
  5. post - pre token balance of the destination is > 0
The amount comes from the balance delta, never from instruction data.

An optional reference key is taken from a zero-lamport System transfer in
the same transaction. A transaction not yet visible on-chain is a
PendingLookup, not an error.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Protocol

import base58

from src.cl_common.errors import PaymentValidationError
from src.cl_common.micros import token_amount_to_micros
from src.cl_payment.domain.addresses import (
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    derive_associated_token_address,
)

logger = logging.getLogger(__name__)

# SPL token instruction opcode -> index of the destination in its accounts
_TRANSFER = 3
_TRANSFER_CHECKED = 12
_DESTINATION_INDEX = {_TRANSFER: 1, _TRANSFER_CHECKED: 2}

_SYSTEM_TRANSFER = 2

_TOKEN_PROGRAM = str(TOKEN_PROGRAM_ID)
_SYSTEM_PROGRAM = str(SYSTEM_PROGRAM_ID)


@dataclass(frozen=True)
class VerifierConfig:
    usdc_mint: str
    merchant_wallet: str
    decimals: int = 6

    @property
    def merchant_token_account(self) -> str:
        return derive_associated_token_address(self.merchant_wallet, self.usdc_mint)


@dataclass(frozen=True)
class PendingLookup:
    signature: str
    state: str = "pending"


@dataclass(frozen=True)
class ValidTransfer:
    signature: str
    reference: str | None
    amount_micros: int
    mint: str
    destination_token_account: str
    slot: int | None
    block_time: int | None
    fee_payer: str | None
    state: str = "valid"


LookupResult = PendingLookup | ValidTransfer


class TransactionFetcher(Protocol):
    async def get_transaction(self, signature: str) -> dict[str, Any] | None: ...


async def lookup_payment_by_signature(
    fetcher: TransactionFetcher, signature: str, config: VerifierConfig
) -> LookupResult:
    tx = await fetcher.get_transaction(signature)
    if tx is None:
        logger.info("Transaction not yet visible on-chain: sig=%s", signature)
        return PendingLookup(signature=signature)
    return parse_payment_transaction(tx, signature, config)


def parse_payment_transaction(
    tx: dict[str, Any], signature: str, config: VerifierConfig
) -> ValidTransfer:
    meta = tx.get("meta")
    if not meta:
        raise PaymentValidationError("missing_meta", "Transaction metadata unavailable")
    if meta.get("err") is not None:
        raise PaymentValidationError(
            "transaction_failed", "Transaction execution failed", {"error": meta["err"]}
        )

    account_keys = extract_account_keys(tx)
    instructions = _instructions(tx)

    token_ixs = [ix for ix in instructions if _program_of(ix, account_keys) == _TOKEN_PROGRAM]
    if not token_ixs:
        raise PaymentValidationError(
            "no_token_transfer", "Transaction does not include an SPL token transfer"
        )

    transfer_ix, dest_pos = _find_transfer(token_ixs)
    if transfer_ix is None:
        raise PaymentValidationError(
            "invalid_token_instruction", "Token transfer instruction malformed"
        )

    dest_index = transfer_ix["accounts"][dest_pos]
    destination = account_keys[dest_index] if 0 <= dest_index < len(account_keys) else None
    if not destination:
        raise PaymentValidationError(
            "missing_destination", "Destination token account missing from transaction"
        )

    expected = config.merchant_token_account
    if destination != expected:
        raise PaymentValidationError(
            "wrong_destination",
            "Transfer destination does not match merchant account",
            {"destinationTokenAccount": destination, "expected": expected},
        )

    post = _balance_for(meta.get("postTokenBalances"), dest_index)
    if post is None:
        raise PaymentValidationError(
            "missing_token_balance", "Unable to verify token mint for destination account"
        )
    if post.get("mint") != config.usdc_mint:
        raise PaymentValidationError(
            "wrong_mint",
            "Transfer mint does not match expected stablecoin",
            {"mint": post.get("mint"), "expected": config.usdc_mint},
        )

    pre = _balance_for(meta.get("preTokenBalances"), dest_index)
    delta = _raw_amount(post) - (_raw_amount(pre) if pre else 0)
    if delta <= 0:
        raise PaymentValidationError(
            "zero_amount", "Transfer amount must be greater than zero"
        )

    decimals = (post.get("uiTokenAmount") or {}).get("decimals", config.decimals)
    return ValidTransfer(
        signature=signature,
        reference=extract_reference(instructions, account_keys),
        amount_micros=token_amount_to_micros(delta, int(decimals)),
        mint=post["mint"],
        destination_token_account=destination,
        slot=tx.get("slot"),
        block_time=tx.get("blockTime"),
        fee_payer=account_keys[0] if account_keys else None,
    )


def extract_account_keys(tx: dict[str, Any]) -> list[str]:
    """Static keys, then v0 lookup-table keys (writable, then readonly)."""
    message = (tx.get("transaction") or {}).get("message")
    if not isinstance(message, dict) or not isinstance(message.get("accountKeys"), list):
        raise PaymentValidationError(
            "unsupported_message", "Unsupported transaction message format"
        )
    keys = [k["pubkey"] if isinstance(k, dict) else k for k in message["accountKeys"]]
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


def extract_reference(
    instructions: list[dict[str, Any]], account_keys: list[str]
) -> str | None:
    """Destination of the first zero-lamport System transfer, if any."""
    for ix in instructions:
        if _program_of(ix, account_keys) != _SYSTEM_PROGRAM:
            continue
        accounts = ix.get("accounts") or []
        if len(accounts) < 2:
            continue
        data = _decode_data(ix.get("data"))
        if len(data) < 12:
            continue
        kind, lamports = struct.unpack_from("<IQ", data, 0)
        if kind != _SYSTEM_TRANSFER or lamports != 0:
            continue
        if 0 <= accounts[1] < len(account_keys):
            return account_keys[accounts[1]]
    return None


def _instructions(tx: dict[str, Any]) -> list[dict[str, Any]]:
    message = (tx.get("transaction") or {}).get("message") or {}
    return list(message.get("instructions") or [])


def _program_of(ix: dict[str, Any], account_keys: list[str]) -> str | None:
    idx = ix.get("programIdIndex")
    if isinstance(idx, int) and 0 <= idx < len(account_keys):
        return account_keys[idx]
    return None


def _find_transfer(token_ixs: list[dict[str, Any]]) -> tuple[dict[str, Any] | None, int]:
    for ix in token_ixs:
        data = _decode_data(ix.get("data"))
        accounts = ix.get("accounts") or []
        if not data:
            continue
        dest_pos = _DESTINATION_INDEX.get(data[0])
        if dest_pos is not None and len(accounts) > dest_pos:
            return ix, dest_pos
    return None, 0


def _decode_data(data: Any) -> bytes:
    if not isinstance(data, str):
        return b""
    try:
        return base58.b58decode(data)
    except ValueError:
        return b""


def _balance_for(balances: list[dict[str, Any]] | None, account_index: int) -> dict[str, Any] | None:
    for balance in balances or []:
        if balance.get("accountIndex") == account_index:
            return balance
    return None


def _raw_amount(balance: dict[str, Any]) -> int:
    amount = (balance.get("uiTokenAmount") or {}).get("amount")
    return int(amount) if amount else 0
