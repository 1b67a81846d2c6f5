"""Fulfilment of one-time credit package purchases."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .catalog import CreditPackage, get_credit_package
from .ledger import CreditLedger
from .models import CreditAuditEvent, CreditAuditEventType, CreditBalance, CreditSource

logger = logging.getLogger(__name__)


class PurchaseFulfilment(BaseModel):
    account_id: str
    purchase_id: str
    package_id: str
    units_added: int
    duplicate: bool = False
    balance: CreditBalance

    model_config = ConfigDict(populate_by_name=True, frozen=True)


@dataclass
class CreditPurchaseService:
    """Adds a confirmed package purchase to the purchased balance exactly once."""

    ledger: CreditLedger

    def fulfil(
        self,
        account_id: str,
        package_id: str,
        purchase_id: str,
        *,
        request_id: Optional[str] = None,
    ) -> PurchaseFulfilment:
        if not purchase_id or not purchase_id.strip():
            raise ValueError("purchase_id is required")
        try:
            package: CreditPackage = get_credit_package(package_id)
        except KeyError as exc:
            raise ValueError(f"Unknown credit package: {package_id}") from exc

        result = self.ledger.grant(
            account_id,
            CreditSource.PURCHASED,
            package.units,
            reason=f"package:{package.package_id}",
            idempotency_key=f"purchase:{account_id}:{purchase_id.strip()}",
        )
        if not result.duplicate:
            logger.info(
                "Purchased credits added",
                extra={
                    "account_id": account_id,
                    "purchase_id": purchase_id,
                    "package_id": package.package_id,
                    "units": package.units,
                },
            )
            if self.ledger.event_logger is not None:
                self.ledger.event_logger.log(
                    CreditAuditEvent(
                        event_type=CreditAuditEventType.PURCHASE_FULFILLED,
                        account_id=account_id,
                        request_id=request_id,
                        metadata={"purchase_id": purchase_id, "package_id": package.package_id},
                    )
                )

        return PurchaseFulfilment(
            account_id=account_id,
            purchase_id=purchase_id,
            package_id=package.package_id,
            units_added=0 if result.duplicate else package.units,
            duplicate=result.duplicate,
            balance=result.balance,
        )


__all__ = ["CreditPurchaseService", "PurchaseFulfilment"]
