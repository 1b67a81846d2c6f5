"""Coupon code validation and redemption."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..errors import CouponError
from .catalog import COUPON_CATALOG, CouponDefinition
from .ledger import CreditLedger
from .models import CreditAuditEvent, CreditAuditEventType, CreditBalance, CreditSource

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CouponRedemption(BaseModel):
    """Outcome of a successful coupon redemption."""

    account_id: str
    code: str
    units_added: int
    duplicate: bool = False
    balance: CreditBalance

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CouponService:
    """Grants coupon units through the ledger, one idempotency key per redemption.

    The n-th redemption of a code by an account is keyed
    ``coupon:<account>:<CODE>:<n>``; two racing requests compute the same key
    and the second one becomes a duplicate no-op in the ledger.
    """

    ledger: CreditLedger
    catalog: Dict[str, CouponDefinition] = field(default_factory=lambda: dict(COUPON_CATALOG))
    clock: Callable[[], datetime] = _utcnow

    def _key_prefix(self, account_id: str, code: str) -> str:
        return f"coupon:{account_id}:{code}:"

    def validate(self, account_id: str, code: Optional[str]) -> CouponDefinition:
        coupon, _ = self._check(account_id, code)
        return coupon

    def _check(self, account_id: str, code: Optional[str]) -> Tuple[CouponDefinition, int]:
        normalized = normalize_code(code)
        if not normalized:
            raise CouponError(code="invalid_code", message="Coupon code is required.")

        coupon = self.catalog.get(normalized)
        if coupon is None:
            raise CouponError(code="invalid_code", message="Coupon code is invalid.")
        if not coupon.active:
            raise CouponError(code="inactive_code", message="Coupon code is not active.")
        if coupon.is_expired(self.clock()):
            raise CouponError(code="expired_code", message="Coupon code has expired.")

        used = self.ledger.count_grants(account_id, self._key_prefix(account_id, normalized))
        if used >= coupon.per_account_limit:
            raise CouponError(
                code="usage_limit_exceeded",
                message=f"This coupon code can only be used {coupon.per_account_limit} time(s).",
                detail={"limit": coupon.per_account_limit, "used": used},
            )
        return coupon, used

    def redeem(self, account_id: str, code: Optional[str], *, request_id: Optional[str] = None) -> CouponRedemption:
        coupon, used = self._check(account_id, code)
        redemption_number = used + 1
        result = self.ledger.grant(
            account_id,
            CreditSource.COUPON,
            coupon.units,
            reason=f"coupon:{coupon.code}",
            idempotency_key=f"{self._key_prefix(account_id, coupon.code)}{redemption_number}",
        )

        if result.duplicate:
            logger.info("Concurrent redemption of %s for %s collapsed into one", coupon.code, account_id)
        else:
            logger.info(
                "Coupon redeemed",
                extra={"account_id": account_id, "coupon_code": coupon.code, "units": coupon.units},
            )
            if self.ledger.event_logger is not None:
                self.ledger.event_logger.log(
                    CreditAuditEvent(
                        event_type=CreditAuditEventType.COUPON_REDEEMED,
                        account_id=account_id,
                        request_id=request_id,
                        metadata={"code": coupon.code, "units": str(coupon.units)},
                    )
                )

        return CouponRedemption(
            account_id=account_id,
            code=coupon.code,
            units_added=0 if result.duplicate else coupon.units,
            duplicate=result.duplicate,
            balance=result.balance,
        )


__all__ = ["CouponRedemption", "CouponService", "normalize_code"]
