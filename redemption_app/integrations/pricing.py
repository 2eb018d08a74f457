from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from redemption_app.core.errors import SchedulingError
from redemption_app.services.nav_service import NavService


@dataclass(frozen=True)
class NavQuote:
    nav: Decimal
    nav_date: datetime


class PricingOracle(Protocol):
    def get_nav(self, token_type: str, as_of: datetime) -> NavQuote:
        ...


class DatabasePricingOracle:
    """
    Latest validated NavRecord for the token type at or before as_of.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_nav(self, token_type: str, as_of: datetime) -> NavQuote:
        row = NavService().latest_validated(self.db, token_type=token_type, as_of=as_of)
        if row is None:
            raise SchedulingError(f"No validated NAV for {token_type} at or before {as_of.isoformat()}.")
        return NavQuote(nav=Decimal(str(row.nav)), nav_date=row.nav_date)
