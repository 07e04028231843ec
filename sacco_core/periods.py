"""
Period Management Module

Manages the cooperative's savings periods (three four-month periods per year).
A period moves upcoming -> active -> completed; at most one period is active
at any time. Shareout activation is a separate flag on a completed period.

Activation keeps a single pointer record naming the active period. The
pointer carries a version that is compare-and-swapped inside the activation
transaction, so two concurrent activations cannot both succeed.
"""

import calendar
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .errors import (
    ValidationError, InvalidTransition, DuplicatePeriod, NotFoundError,
    ConcurrencyError, PeriodNotCompleted
)
from .config import SaccoConfig, get_config


logger = logging.getLogger(__name__)


class PeriodStatus(Enum):
    """Period lifecycle status"""
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class Period(StorageRecord):
    """A savings period (called a quarter by the members)"""
    year: int
    sequence: int
    name: str
    start_date: date
    end_date: date
    status: PeriodStatus = PeriodStatus.UPCOMING
    shareout_activated: bool = False
    shareout_date: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.status == PeriodStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.status == PeriodStatus.COMPLETED

    @property
    def months(self) -> int:
        """Number of calendar months the period spans"""
        return (self.end_date.year - self.start_date.year) * 12 + self.end_date.month - self.start_date.month + 1

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


def period_bounds(year: int, sequence: int, months_per_period: int = 4) -> tuple:
    """First and last day of the given period of a year"""
    start_month = (sequence - 1) * months_per_period + 1
    end_month = start_month + months_per_period - 1
    last_day = calendar.monthrange(year, end_month)[1]
    return date(year, start_month, 1), date(year, end_month, last_day)


class PeriodManager(EventPublisherMixin):
    """
    Creates periods and drives their lifecycle
    """

    POINTER_TABLE = "period_pointer"
    POINTER_ID = "active_period"

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 config: Optional[SaccoConfig] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.table_name = "periods"
        self.config = config or get_config()
        self.storage.register_unique(self.table_name, ("year", "sequence"))

    def create_period(
        self,
        year: int,
        sequence: int,
        start_date: date,
        end_date: date,
        name: Optional[str] = None
    ) -> Period:
        """
        Create a new period in UPCOMING status

        Args:
            year: Calendar year the period belongs to
            sequence: Position within the year (1..periods_per_year)
            start_date: First day of the period
            end_date: Last day of the period
            name: Display name, defaults to "Q{sequence} {year}"

        Returns:
            Created Period

        Raises:
            ValidationError: sequence out of range or end before start
            DuplicatePeriod: (year, sequence) already exists
        """
        if sequence not in range(1, self.config.periods_per_year + 1):
            raise ValidationError(
                f"Period sequence must be between 1 and {self.config.periods_per_year}",
                sequence=sequence
            )
        if end_date < start_date:
            raise ValidationError("Period end date cannot be before its start date",
                                  start_date=start_date, end_date=end_date)

        now = datetime.now(timezone.utc)
        period = Period(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            year=year,
            sequence=sequence,
            name=name or f"Q{sequence} {year}",
            start_date=start_date,
            end_date=end_date
        )

        with self.storage.atomic():
            try:
                self.storage.save(self.table_name, period.id, period.to_dict())
            except DuplicateKeyError:
                raise DuplicatePeriod(f"Period {sequence} of {year} already exists", year=year, sequence=sequence)
            self.audit_trail.log_event(
                event_type=AuditEventType.PERIOD_CREATED,
                entity_type="period",
                entity_id=period.id,
                metadata={"year": year, "sequence": sequence, "start_date": start_date, "end_date": end_date}
            )
            self.publish_event(DomainEvent.PERIOD_CREATED, "period", period.id, {"year": year, "sequence": sequence})

        logger.info(f"Created period {period.name} ({period.id})")
        return period

    def find_period(self, period_id: str) -> Optional[Period]:
        data = self.storage.load(self.table_name, period_id)
        return Period.from_dict(data) if data else None

    def get_period(self, period_id: str) -> Period:
        period = self.find_period(period_id)
        if period is None:
            raise NotFoundError("period", period_id)
        return period

    def get_active_period(self) -> Optional[Period]:
        active = self.storage.find(self.table_name, {"status": PeriodStatus.ACTIVE.value})
        return Period.from_dict(active[0]) if active else None

    def list_periods(self, year: Optional[int] = None) -> List[Period]:
        """All periods, optionally restricted to one year, in chronological order"""
        if year is None:
            records = self.storage.load_all(self.table_name)
        else:
            records = self.storage.find(self.table_name, {"year": year})
        periods = [Period.from_dict(data) for data in records]
        periods.sort(key=lambda p: (p.year, p.sequence))
        return periods

    def periods_for_year(self, year: int) -> List[Period]:
        return self.list_periods(year)

    def year_is_closed(self, year: int) -> bool:
        """True when the year has periods and every one of them is completed"""
        periods = self.periods_for_year(year)
        return bool(periods) and all(p.is_completed for p in periods)

    def _save(self, period: Period) -> None:
        period.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, period.id, period.to_dict())

    def _load_pointer(self) -> dict:
        pointer = self.storage.load(self.POINTER_TABLE, self.POINTER_ID)
        if pointer is None:
            pointer = {"id": self.POINTER_ID, "period_id": None, "version": 0}
            self.storage.save(self.POINTER_TABLE, self.POINTER_ID, pointer)
        return pointer

    def _move_pointer(self, pointer: dict, period_id: Optional[str]) -> None:
        updated = {"id": self.POINTER_ID, "period_id": period_id, "version": pointer["version"] + 1}
        if not self.storage.compare_and_save(self.POINTER_TABLE, self.POINTER_ID, updated,
                                             {"version": pointer["version"]}):
            raise ConcurrencyError("Active period changed concurrently; retry the activation",
                                   period_id=period_id)

    def activate(self, period_id: str, actor_id: Optional[str] = None) -> Period:
        """
        Make a period the single active period.

        Every other active period is completed in the same transaction. This
        is the administrative override: any period, whatever its status, may
        be activated.
        """
        with self.storage.atomic():
            period = self.get_period(period_id)
            pointer = self._load_pointer()
            previous_status = period.status

            demoted = []
            for other in self.storage.find(self.table_name, {"status": PeriodStatus.ACTIVE.value}):
                if other["id"] == period_id:
                    continue
                other_period = Period.from_dict(other)
                other_period.status = PeriodStatus.COMPLETED
                self._save(other_period)
                demoted.append(other_period.id)
                self.audit_trail.log_event(
                    event_type=AuditEventType.PERIOD_COMPLETED,
                    entity_type="period",
                    entity_id=other_period.id,
                    metadata={"reason": "superseded", "superseded_by": period_id},
                    user_id=actor_id
                )

            period.status = PeriodStatus.ACTIVE
            self._save(period)
            self._move_pointer(pointer, period.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.PERIOD_ACTIVATED,
                entity_type="period",
                entity_id=period.id,
                metadata={"previous_status": previous_status.value, "demoted": demoted},
                user_id=actor_id
            )
            self.publish_event(DomainEvent.PERIOD_ACTIVATED, "period", period.id,
                               {"previous_status": previous_status.value, "demoted": demoted})

        logger.info(f"Activated period {period.name}; demoted {len(demoted)} period(s)")
        return period

    def complete(self, period_id: str, actor_id: Optional[str] = None) -> Period:
        """Close the active period"""
        with self.storage.atomic():
            period = self.get_period(period_id)
            if period.status != PeriodStatus.ACTIVE:
                raise InvalidTransition("period", period_id, period.status.value,
                                        PeriodStatus.ACTIVE.value, "complete")

            pointer = self._load_pointer()
            period.status = PeriodStatus.COMPLETED
            self._save(period)
            if pointer["period_id"] == period.id:
                self._move_pointer(pointer, None)

            self.audit_trail.log_event(
                event_type=AuditEventType.PERIOD_COMPLETED,
                entity_type="period",
                entity_id=period.id,
                metadata={"reason": "closed"},
                user_id=actor_id
            )
            self.publish_event(DomainEvent.PERIOD_COMPLETED, "period", period.id, {"year": period.year})

        logger.info(f"Completed period {period.name}")
        return period

    def activate_shareout(self, period_id: str, shareout_date: Optional[date] = None,
                          actor_id: Optional[str] = None) -> Period:
        """Open the shareout window of a completed period"""
        with self.storage.atomic():
            period = self.get_period(period_id)
            if not period.is_completed:
                raise PeriodNotCompleted(
                    f"Shareout can only be activated for a completed period; {period.name} is {period.status.value}",
                    period_id=period_id
                )

            period.shareout_activated = True
            period.shareout_date = shareout_date or datetime.now(timezone.utc).date()
            self._save(period)

            self.audit_trail.log_event(
                event_type=AuditEventType.SHAREOUT_ACTIVATED,
                entity_type="period",
                entity_id=period.id,
                metadata={"shareout_date": period.shareout_date},
                user_id=actor_id
            )
            self.publish_event(DomainEvent.SHAREOUT_ACTIVATED, "period", period.id,
                               {"shareout_date": period.shareout_date.isoformat()})

        return period

    def ensure_current_period(self, today: Optional[date] = None) -> Optional[Period]:
        """
        Bootstrap the first period.

        When no period exists yet, create the one containing today and
        activate it. Otherwise return the active period, if any.
        """
        today = today or datetime.now(timezone.utc).date()
        with self.storage.atomic():
            if self.storage.count(self.table_name) > 0:
                return self.get_active_period()

            months = self.config.months_per_period
            sequence = (today.month - 1) // months + 1
            start, end = period_bounds(today.year, sequence, months)
            period = self.create_period(today.year, sequence, start, end)
            return self.activate(period.id)
