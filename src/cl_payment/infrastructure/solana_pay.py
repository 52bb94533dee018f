"""Solana Pay transfer-request helpers."""

from decimal import Decimal
from urllib.parse import quote, urlencode

from solders.keypair import Keypair

from src.cl_common.micros import MICRO


def new_reference() -> str:
    """A fresh ephemeral public key used only to tag one intent on-chain."""
    return str(Keypair().pubkey())


def usd_micros_to_amount(usd_micros: int) -> str:
    """1_500_000 -> '1.5' (Solana Pay amounts are decimal, no trailing zeros)."""
    amount = (Decimal(usd_micros) / MICRO).normalize()
    return format(amount, "f")


def build_transfer_url(
    recipient: str,
    amount: str,
    spl_token: str,
    reference: str,
    label: str | None = None,
    message: str | None = None,
) -> str:
    params: list[tuple[str, str]] = [
        ("amount", amount),
        ("spl-token", spl_token),
        ("reference", reference),
    ]
    if label:
        params.append(("label", label))
    if message:
        params.append(("message", message))
    return f"solana:{recipient}?{urlencode(params, quote_via=quote)}"
