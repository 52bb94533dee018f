"""PaymentApplicationService — intents, signature attach, verify + confirm.

Confirmation flow for a validated on-chain transfer:
  1. reference present -> caller's pending intent by reference
  2. otherwise / not found -> caller's payment by signature
  3. found confirmed -> already_confirmed (idempotent re-verification)
     found not pending -> PaymentNotPendingError
     found pending -> conditional confirm + credit in one transaction; the
       verified signature replaces one attached earlier
  4. nothing found -> manual payment keyed by signature; a signature
     already recorded for another user -> SignatureForbiddenError

Every write runs in one transaction committed here.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.cl_account.domain.repository import LedgerRepositoryProtocol
from src.cl_account.infrastructure.persistence import LedgerRepository
from src.cl_common.enums import LedgerEntryType, PaymentStatus
from src.cl_common.errors import (
    DuplicateSignatureError,
    PaymentAlreadyConfirmedError,
    PaymentNotFoundError,
    PaymentNotPendingError,
    ServiceNotConfiguredError,
    SignatureForbiddenError,
)
from src.cl_payment.application.schemas import (
    IntentResponse,
    PaymentHistoryResponse,
    PaymentItem,
    PaymentStatusResponse,
    VerifyResponse,
)
from src.cl_payment.domain.addresses import is_valid_pubkey
from src.cl_payment.domain.models import IntentPayment, Payment
from src.cl_payment.domain.repository import PaymentRepositoryProtocol
from src.cl_payment.domain.verifier import (
    PendingLookup,
    TransactionFetcher,
    ValidTransfer,
    VerifierConfig,
    lookup_payment_by_signature,
)
from src.cl_payment.infrastructure.persistence import PaymentRepository
from src.cl_payment.infrastructure.solana_pay import (
    build_transfer_url,
    new_reference,
    usd_micros_to_amount,
)
from src.cl_payment.infrastructure.solana_rpc import SolanaRpcClient

logger = logging.getLogger(__name__)


class PaymentApplicationService:
    def __init__(
        self,
        repo: PaymentRepositoryProtocol | None = None,
        ledger: LedgerRepositoryProtocol | None = None,
        rpc: TransactionFetcher | None = None,
        config: VerifierConfig | None = None,
    ) -> None:
        self._repo: PaymentRepositoryProtocol = repo or PaymentRepository()
        self._ledger: LedgerRepositoryProtocol = ledger or LedgerRepository()
        self._rpc: TransactionFetcher = rpc or SolanaRpcClient()
        self._config = config

    def _verifier_config(self) -> VerifierConfig:
        if self._config is not None:
            return self._config
        mint = settings.USDC_MINT
        merchant = settings.MERCHANT_WALLET_ADDRESS
        if not mint or not merchant:
            raise ServiceNotConfiguredError("payments not configured: USDC_MINT / MERCHANT_WALLET_ADDRESS")
        if not is_valid_pubkey(mint) or not is_valid_pubkey(merchant):
            raise ServiceNotConfiguredError("payments misconfigured: invalid mint or merchant address")
        self._config = VerifierConfig(
            usdc_mint=mint, merchant_wallet=merchant, decimals=settings.USDC_DECIMALS
        )
        return self._config

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_intent(
        self, db: AsyncSession, user_id: str, amount_usd_micros: int
    ) -> IntentResponse:
        config = self._verifier_config()
        reference = new_reference()
        try:
            payment = await self._repo.create_intent(
                db, user_id, reference, amount_usd_micros, config.usdc_mint
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        amount = usd_micros_to_amount(amount_usd_micros)
        logger.info(
            "Payment intent created: payment=%s user=%s amount_usd_micros=%d ref=%s",
            payment.id, user_id, amount_usd_micros, reference,
        )
        return IntentResponse(
            payment_id=payment.id,
            reference=reference,
            recipient=config.merchant_wallet,
            destination_token_account=config.merchant_token_account,
            mint=config.usdc_mint,
            amount=amount,
            amount_usd_micros=amount_usd_micros,
            label=settings.PAYMENT_LABEL,
            message=settings.PAYMENT_MESSAGE,
            url=build_transfer_url(
                recipient=config.merchant_wallet,
                amount=amount,
                spl_token=config.usdc_mint,
                reference=reference,
                label=settings.PAYMENT_LABEL,
                message=settings.PAYMENT_MESSAGE,
            ),
        )

    async def attach_signature(
        self, db: AsyncSession, user_id: str, reference: str, signature: str
    ) -> PaymentItem:
        try:
            payment = await self._repo.find_by_reference(db, reference, user_id)
            if payment is None:
                raise PaymentNotFoundError(reference)
            if not payment.is_pending:
                raise PaymentNotPendingError(payment.status.value, payment.tx_signature)
            updated = await self._repo.attach_signature(db, payment.id, signature)
            if updated is None:
                current = await self._repo.find_by_reference(db, reference, user_id)
                status = current.status.value if current else "missing"
                raise PaymentNotPendingError(status, current.tx_signature if current else None)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Signature attached: payment=%s sig=%s", updated.id, signature)
        return PaymentItem.from_domain(updated)

    async def get_status(
        self, db: AsyncSession, user_id: str, reference: str
    ) -> PaymentStatusResponse:
        payment = await self._repo.find_by_reference(db, reference, user_id)
        if payment is None:
            return PaymentStatusResponse(status="not_found", reference=reference)
        return PaymentStatusResponse(
            status=payment.status.value,
            reference=reference,
            tx_signature=payment.tx_signature,
            credited_microcredits=payment.credited_microcredits,
            confirmed_at=payment.confirmed_at.isoformat() if payment.confirmed_at else None,
        )

    async def list_history(
        self, db: AsyncSession, user_id: str, limit: int | None = None
    ) -> PaymentHistoryResponse:
        payments = await self._repo.list_history(
            db, user_id, limit or settings.PAYMENT_HISTORY_LIMIT
        )
        return PaymentHistoryResponse(items=[PaymentItem.from_domain(p) for p in payments])

    # ------------------------------------------------------------------
    # Verify + confirm
    # ------------------------------------------------------------------

    async def verify_signature(
        self, db: AsyncSession, user_id: str, signature: str
    ) -> VerifyResponse:
        config = self._verifier_config()
        lookup = await lookup_payment_by_signature(self._rpc, signature, config)
        if isinstance(lookup, PendingLookup):
            return VerifyResponse.pending(signature)
        return await self.confirm_transfer(db, user_id, lookup)

    async def confirm_transfer(
        self, db: AsyncSession, user_id: str, transfer: ValidTransfer
    ) -> VerifyResponse:
        try:
            payment = await self._find_candidate(db, user_id, transfer)
            if payment is not None:
                response = await self._confirm_existing(db, user_id, payment, transfer)
            else:
                response = await self._credit_manual(db, user_id, transfer)
            await db.commit()
        except DuplicateSignatureError:
            # The signature is attached to a different payment row
            await db.rollback()
            return await self._resolve_signature_owner(db, user_id, transfer.signature)
        except Exception:
            await db.rollback()
            raise
        return response

    async def _find_candidate(
        self, db: AsyncSession, user_id: str, transfer: ValidTransfer
    ) -> Payment | None:
        if transfer.reference:
            payment = await self._repo.find_by_reference(db, transfer.reference, user_id)
            # A reused reference QR paid twice: the new signature is its own payment
            if payment is not None and not (
                payment.is_confirmed and payment.tx_signature != transfer.signature
            ):
                return payment
        return await self._repo.find_by_signature(db, transfer.signature, user_id)

    async def _confirm_existing(
        self,
        db: AsyncSession,
        user_id: str,
        payment: Payment,
        transfer: ValidTransfer,
    ) -> VerifyResponse:
        if payment.is_confirmed:
            logger.info("Payment already confirmed: payment=%s", payment.id)
            account = await self._ledger.get_or_create_account(db, user_id)
            return VerifyResponse.for_payment(
                "already_confirmed", transfer.signature, payment, False,
                account.balance_microcredits,
            )
        if payment.status is not PaymentStatus.PENDING:
            raise PaymentNotPendingError(payment.status.value, payment.tx_signature)

        if isinstance(payment, IntentPayment) and payment.amount_usd_micros != transfer.amount_micros:
            logger.warning(
                "On-chain amount differs from intent: payment=%s expected=%d actual=%d",
                payment.id, payment.amount_usd_micros, transfer.amount_micros,
            )

        confirmed = await self._repo.confirm_payment(
            db, payment.id, user_id, transfer.signature, transfer.amount_micros
        )
        if confirmed is None:
            # A concurrent verification confirmed it first
            raise PaymentAlreadyConfirmedError(
                transfer.signature,
                payment.reference if isinstance(payment, IntentPayment) else None,
            )

        account = await self._ledger.get_or_create_account(db, user_id)
        account = await self._ledger.credit_account(
            db,
            account.id,
            transfer.amount_micros,
            LedgerEntryType.PAYMENT_CREDIT,
            "PAYMENT",
            confirmed.id,
            f"USDC payment {transfer.signature}",
        )
        logger.info(
            "Payment confirmed: payment=%s user=%s credited=%d balance=%d",
            confirmed.id, user_id, transfer.amount_micros, account.balance_microcredits,
        )
        return VerifyResponse.for_payment(
            "confirmed", transfer.signature, confirmed, True, account.balance_microcredits
        )

    async def _credit_manual(
        self, db: AsyncSession, user_id: str, transfer: ValidTransfer
    ) -> VerifyResponse:
        result = await self._repo.create_manual_payment(
            db, user_id, transfer.signature, transfer.amount_micros, transfer.mint
        )
        if result.already_existed:
            if result.payment.user_id != user_id:
                logger.warning(
                    "Signature owned by another user: sig=%s requester=%s",
                    transfer.signature, user_id,
                )
                raise SignatureForbiddenError()
            account = await self._ledger.get_or_create_account(db, user_id)
            return VerifyResponse.for_payment(
                "already_confirmed", transfer.signature, result.payment, False,
                account.balance_microcredits,
            )

        account = await self._ledger.get_or_create_account(db, user_id)
        account = await self._ledger.credit_account(
            db,
            account.id,
            transfer.amount_micros,
            LedgerEntryType.PAYMENT_CREDIT,
            "PAYMENT",
            result.payment.id,
            f"Manual USDC payment {transfer.signature}",
        )
        logger.info(
            "Manual payment credited: payment=%s user=%s credited=%d",
            result.payment.id, user_id, transfer.amount_micros,
        )
        return VerifyResponse.for_payment(
            "confirmed", transfer.signature, result.payment, True, account.balance_microcredits
        )

    async def _resolve_signature_owner(
        self, db: AsyncSession, user_id: str, signature: str
    ) -> VerifyResponse:
        owner = await self._repo.find_by_signature(db, signature)
        if owner is not None and owner.user_id != user_id:
            raise SignatureForbiddenError()
        if owner is None or not owner.is_confirmed:
            raise DuplicateSignatureError()
        account = await self._ledger.get_or_create_account(db, user_id)
        await db.commit()
        return VerifyResponse.for_payment(
            "already_confirmed", signature, owner, False, account.balance_microcredits
        )
