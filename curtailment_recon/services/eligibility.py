"""Canonical curtailment eligibility predicate."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from curtailment_recon.core.config import get_settings
from curtailment_recon.models.curtailment_record import CurtailmentRecord


@dataclass(frozen=True)
class EligibilityPolicy:
    """Decides which curtailment observations count towards calculations.

    A record is eligible when its volume is negative and, unless
    ``require_flags`` is off, at least one of the SO / CADL flags is set.
    """

    require_flags: bool = True

    @classmethod
    def from_settings(cls) -> "EligibilityPolicy":
        return cls(require_flags=get_settings().ELIGIBILITY_REQUIRE_FLAGS)

    def is_eligible(
        self,
        volume: Union[float, Decimal, None],
        so_flag: Optional[bool],
        cadl_flag: Optional[bool],
    ) -> bool:
        if volume is None or not volume < 0:
            return False
        if self.require_flags:
            return bool(so_flag) or bool(cadl_flag)
        return True

    def sql_filter(self) -> ColumnElement[bool]:
        """The same predicate as a WHERE clause on curtailment_records."""
        volume_clause = CurtailmentRecord.volume < 0
        if not self.require_flags:
            return volume_clause
        return and_(
            volume_clause,
            or_(CurtailmentRecord.so_flag.is_(True), CurtailmentRecord.cadl_flag.is_(True)),
        )
