"""
services/settlement_config.py  –  Per-call configuration snapshot

Settlement reads its rates from one immutable snapshot resolved at the
start of the call, never from the live settings object, so a split can be
recomputed later from the same inputs.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.orm import Session

from config import settings as app_settings
from models.wallet import RestaurantWallet
from utils.money import to_decimal


class SettlementConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    commission_rate: Decimal = Field(ge=0, le=100)
    rider_base_pay: Decimal = Field(ge=0)
    rider_per_km_rate: Decimal = Field(ge=0)
    rider_pay_cap: Decimal = Field(ge=0)
    gateway_fee_percent: Decimal = Field(ge=0, le=100)
    bonus_target_deliveries: int = Field(ge=1)
    bonus_amount: Decimal = Field(ge=0)
    cod_overdue_threshold: Decimal = Field(ge=0)
    cod_overdue_days: int = Field(ge=0)
    cod_block_threshold: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def check_cap(self):
        if self.rider_base_pay > self.rider_pay_cap:
            raise ValueError("rider_base_pay cannot exceed rider_pay_cap")
        return self

    @classmethod
    def from_settings(cls, settings=None, commission_rate: Optional[Decimal] = None) -> "SettlementConfig":
        s = settings or app_settings
        return cls(
            commission_rate=to_decimal(commission_rate if commission_rate is not None else s.DEFAULT_COMMISSION_RATE),
            rider_base_pay=to_decimal(s.RIDER_BASE_PAY),
            rider_per_km_rate=to_decimal(s.RIDER_PER_KM_RATE),
            rider_pay_cap=to_decimal(s.RIDER_PAY_CAP),
            gateway_fee_percent=to_decimal(s.GATEWAY_FEE_PERCENT),
            bonus_target_deliveries=s.BONUS_TARGET_DELIVERIES,
            bonus_amount=to_decimal(s.BONUS_AMOUNT),
            cod_overdue_threshold=to_decimal(s.COD_OVERDUE_THRESHOLD),
            cod_overdue_days=s.COD_OVERDUE_DAYS,
            cod_block_threshold=to_decimal(s.COD_BLOCK_THRESHOLD),
        )


def resolve_settlement_config(db: Session, restaurant_id: Optional[int] = None, settings=None) -> SettlementConfig:
    """Global settings plus the restaurant's own commission rate, if it has one."""
    override = None
    if restaurant_id is not None:
        override = db.query(RestaurantWallet.commission_rate).filter(
            RestaurantWallet.restaurant_id == restaurant_id
        ).scalar()
    return SettlementConfig.from_settings(settings, commission_rate=override)
