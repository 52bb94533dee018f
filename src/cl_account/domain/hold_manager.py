"""Hold Manager — the single chokepoint for hold lifecycle balance mutation.

create -> (optional one-time increase) -> capture | release

All methods run inside the CALLER's transaction; the caller commits or rolls
back. Conversion USD-micros -> microcredits always rounds up. Capture replays
the factor snapshotted on the hold, never the live one.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.cl_account.domain.repository import (
    LedgerRepositoryProtocol,
    SettingsRepositoryProtocol,
)
from src.cl_common.enums import HoldStatus, OveragePolicy
from src.cl_common.errors import (
    HoldNotFoundError,
    HoldNotOpenError,
    InsufficientCreditsError,
    UsageExceededEstimateError,
)
from src.cl_common.micros import usd_micros_to_microcredits, usd_to_factor_micros

logger = logging.getLogger(__name__)
alerts = logging.getLogger("cl.alerts")

FACTOR_SETTING_KEY = "credit_usd_per_credit_micros"


@dataclass(frozen=True)
class HoldReservation:
    hold_id: str
    account_id: str
    reserved_microcredits: int
    factor_micros: int


@dataclass(frozen=True)
class CaptureResult:
    hold_id: str
    captured_microcredits: int
    refunded_microcredits: int
    written_off_microcredits: int = 0
    increased_by_microcredits: int = 0
    already_resolved: bool = False


@dataclass(frozen=True)
class ReleaseResult:
    hold_id: str
    released_microcredits: int
    already_resolved: bool = False


class HoldManager:
    def __init__(
        self,
        repo: LedgerRepositoryProtocol | None = None,
        settings_repo: SettingsRepositoryProtocol | None = None,
        overage_policy: OveragePolicy | str | None = None,
        fallback_factor_micros: int | None = None,
    ) -> None:
        if repo is None or settings_repo is None:
            from src.cl_account.infrastructure.persistence import (
                AppSettingsRepository,
                LedgerRepository,
            )

            repo = repo or LedgerRepository()
            settings_repo = settings_repo or AppSettingsRepository()
        self._repo: LedgerRepositoryProtocol = repo
        self._settings_repo: SettingsRepositoryProtocol = settings_repo
        self._policy = OveragePolicy(overage_policy or settings.USAGE_OVERAGE_POLICY)
        self._fallback_factor = fallback_factor_micros or usd_to_factor_micros(
            settings.CREDIT_USD_PER_CREDIT
        )

    @property
    def repo(self) -> LedgerRepositoryProtocol:
        return self._repo

    async def get_exchange_factor(self, db: AsyncSession) -> int:
        """Current USD-micros per credit; configured fallback if unset or invalid."""
        raw = await self._settings_repo.get_value_text(db, FACTOR_SETTING_KEY)
        if not raw:
            return self._fallback_factor
        try:
            parsed = int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", FACTOR_SETTING_KEY, raw)
            return self._fallback_factor
        return parsed if parsed > 0 else self._fallback_factor

    async def create_hold(
        self,
        db: AsyncSession,
        account_id: str,
        estimated_usd_micros: int,
        idempotency_key: str,
    ) -> HoldReservation:
        if estimated_usd_micros <= 0:
            raise ValueError(f"Hold estimate must be positive, got {estimated_usd_micros}")
        factor = await self.get_exchange_factor(db)
        amount = usd_micros_to_microcredits(estimated_usd_micros, factor)
        hold = await self._repo.create_hold(db, account_id, amount, idempotency_key, factor)
        logger.info(
            "Hold created: hold=%s account=%s reserved=%d factor=%d key=%s",
            hold.id, account_id, amount, factor, idempotency_key,
        )
        return HoldReservation(
            hold_id=hold.id,
            account_id=account_id,
            reserved_microcredits=hold.amount_microcredits,
            factor_micros=factor,
        )

    async def capture_hold(
        self, db: AsyncSession, hold_id: str, actual_usd_micros: int
    ) -> CaptureResult:
        if actual_usd_micros < 0:
            raise ValueError(f"Actual usage must be non-negative, got {actual_usd_micros}")

        hold = await self._repo.get_hold(db, hold_id, for_update=True)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        if hold.status is HoldStatus.CAPTURED:
            logger.info("Capture no-op, hold already captured: hold=%s", hold_id)
            captured = hold.captured_microcredits or 0
            return CaptureResult(
                hold_id=hold_id,
                captured_microcredits=captured,
                refunded_microcredits=0,
                written_off_microcredits=hold.written_off_microcredits,
                already_resolved=True,
            )
        if hold.status is not HoldStatus.OPEN:
            raise HoldNotOpenError(hold_id, hold.status.value)

        need = usd_micros_to_microcredits(actual_usd_micros, hold.factor_micros)
        increased_by = 0
        written_off = 0

        if need > hold.amount_microcredits:
            additional = need - hold.amount_microcredits
            logger.warning(
                "Actual usage exceeds hold: hold=%s reserved=%d need=%d additional=%d",
                hold_id, hold.amount_microcredits, need, additional,
            )
            available = 0
            if hold.increased_at is None:
                try:
                    hold = await self._repo.increase_hold(db, hold, additional)
                    increased_by = additional
                except InsufficientCreditsError as exc:
                    available = (exc.data or {}).get("available_microcredits", 0)
            else:
                logger.warning("Hold already increased once, cannot extend: hold=%s", hold_id)
                account = await self._repo.get_account(db, hold.account_id)
                available = account.balance_microcredits if account else 0

            if not increased_by:
                if self._policy is OveragePolicy.HOLD_OPEN:
                    alerts.critical(
                        "Usage overage left open, manual action required: hold=%s "
                        "additional=%d available=%d",
                        hold_id, additional, available,
                    )
                    raise UsageExceededEstimateError(hold_id, additional, available)
                written_off = additional
                need = hold.amount_microcredits
                alerts.critical(
                    "Usage overage written off: hold=%s written_off=%d available=%d",
                    hold_id, written_off, available,
                )

        captured = await self._repo.capture_hold(db, hold, need, written_off)
        if captured is None:
            # Resolved concurrently between the read and the conditional update
            current = await self._repo.get_hold(db, hold_id)
            status = current.status.value if current else "missing"
            raise HoldNotOpenError(hold_id, status)

        refunded = captured.amount_microcredits - need
        logger.info(
            "Hold captured: hold=%s captured=%d refunded=%d written_off=%d",
            hold_id, need, refunded, written_off,
        )
        return CaptureResult(
            hold_id=hold_id,
            captured_microcredits=need,
            refunded_microcredits=refunded,
            written_off_microcredits=written_off,
            increased_by_microcredits=increased_by,
        )

    async def release_hold(self, db: AsyncSession, hold_id: str) -> ReleaseResult:
        hold = await self._repo.get_hold(db, hold_id, for_update=True)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        if not hold.is_open:
            logger.info("Release no-op, hold already %s: hold=%s", hold.status.value, hold_id)
            return ReleaseResult(hold_id=hold_id, released_microcredits=0, already_resolved=True)

        released = await self._repo.release_hold(db, hold)
        if released is None:
            logger.info("Release no-op, hold resolved concurrently: hold=%s", hold_id)
            return ReleaseResult(hold_id=hold_id, released_microcredits=0, already_resolved=True)

        logger.info("Hold released: hold=%s amount=%d", hold_id, released.amount_microcredits)
        return ReleaseResult(hold_id=hold_id, released_microcredits=released.amount_microcredits)
