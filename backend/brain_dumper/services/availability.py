"""
Availability computation.

The module-level functions are pure transformations over ``TimeSlot`` and
``AvailabilityWindow`` values. ``AvailabilityService`` builds per-calendar
windows from the local event store and intersects them.
"""
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..core.cache import TTLCache
from ..core.exceptions import ValidationError
from ..core.timeutils import as_utc, at_local_time, date_key, date_range, get_zone
from ..database.models import CalendarEvent, User
from ..schemas.calendar import (
    AvailabilityResponse, AvailabilityWindow, DailyStats, TimeSlot, WorkingHours
)
from .preferences import get_enabled_calendar_ids, load_preferences, load_protected_slots
from .scheduling.protected import get_protected_times

logger = structlog.get_logger(__name__)

Range = Tuple[datetime, datetime]


def _minutes(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60))


def summarize(day: str, slots: List[TimeSlot]) -> AvailabilityWindow:
    """Wrap slots into a window with free/busy totals."""
    free = sum(_minutes(s.start, s.end) for s in slots if s.available)
    busy = sum(_minutes(s.start, s.end) for s in slots if not s.available)
    return AvailabilityWindow(date=day, slots=slots, total_free_minutes=free, total_busy_minutes=busy)


def generate_time_slots(day: date, working_hours: WorkingHours, busy: Sequence[Range],
                        tz_name: str = "UTC", slot_minutes: Optional[int] = None) -> List[TimeSlot]:
    """Fixed-granularity slots over the working day; a slot is busy if any busy range touches it."""
    step = timedelta(minutes=slot_minutes or settings.AVAILABILITY_SLOT_MINUTES)
    day_start = at_local_time(day, working_hours.start, tz_name)
    day_end = at_local_time(day, working_hours.end, tz_name)

    slots = []
    current = day_start
    while current < day_end:
        slot_end = min(current + step, day_end)
        is_busy = any(as_utc(b_start) < slot_end and as_utc(b_end) > current for b_start, b_end in busy)
        slots.append(TimeSlot(start=current, end=slot_end, available=not is_busy))
        current = slot_end
    return slots


def merge_contiguous(slots: Iterable[TimeSlot]) -> List[TimeSlot]:
    """
    Coalesce adjacent slots with the same availability.

    Holes between consecutive slots become explicit busy slots, so
    09:00-09:30, 09:30-10:00 and 10:30-11:00 (all free) turn into
    09:00-10:00 free, 10:00-10:30 busy, 10:30-11:00 free.
    """
    merged: List[TimeSlot] = []
    for slot in sorted(slots, key=lambda s: (as_utc(s.start), as_utc(s.end))):
        start, end = as_utc(slot.start), as_utc(slot.end)
        if merged:
            last = merged[-1]
            if start > last.end:
                if last.available:
                    merged.append(TimeSlot(start=last.end, end=start, available=False))
                else:
                    last.end = start
                last = merged[-1]
            if last.available == slot.available and start <= last.end:
                last.end = max(last.end, end)
                continue
            if start < last.end:
                # Overlapping slots of differing availability: the earlier one keeps the overlap
                start = last.end
                if end <= start:
                    continue
        merged.append(TimeSlot(start=start, end=end, available=slot.available))
    return merged


def merge_window(window: AvailabilityWindow) -> AvailabilityWindow:
    return summarize(window.date, merge_contiguous(window.slots))


def group_by_date(windows: Iterable[AvailabilityWindow]) -> Dict[str, AvailabilityWindow]:
    """Index windows by ``YYYY-MM-DD``; later entries replace earlier ones."""
    grouped = {}
    for window in windows:
        grouped[window.date] = window
    return grouped


def _free_ranges(slots: Iterable[TimeSlot]) -> List[Range]:
    return [(s.start, s.end) for s in merge_contiguous(slots) if s.available]


def _intersect_ranges(a: List[Range], b: List[Range]) -> List[Range]:
    result = []
    i = j = 0
    while i < len(a) and j < len(b):
        start = max(a[i][0], b[j][0])
        end = min(a[i][1], b[j][1])
        if start < end:
            result.append((start, end))
        if a[i][1] < b[j][1]:
            i += 1
        else:
            j += 1
    return result


def intersect(window_sets: Sequence[Sequence[AvailabilityWindow]]) -> List[AvailabilityWindow]:
    """
    Combine per-calendar windows with AND semantics.

    A range is free only if every input has it free. Dates missing from any
    input are dropped. Busy time fills the rest of the day's envelope.
    """
    if not window_sets:
        return []
    if len(window_sets) == 1:
        return list(window_sets[0])

    grouped = [group_by_date(windows) for windows in window_sets]
    common_dates = set(grouped[0])
    for by_date in grouped[1:]:
        common_dates &= set(by_date)

    result = []
    for day in sorted(common_dates):
        windows = [by_date[day] for by_date in grouped]
        all_slots = [s for w in windows for s in w.slots]

        free = _free_ranges(windows[0].slots)
        for window in windows[1:]:
            free = _intersect_ranges(free, _free_ranges(window.slots))

        if not all_slots:
            result.append(summarize(day, []))
            continue

        envelope_start = min(as_utc(s.start) for s in all_slots)
        envelope_end = max(as_utc(s.end) for s in all_slots)
        slots = [TimeSlot(start=s, end=e, available=True) for s, e in free]
        if not slots:
            slots = [TimeSlot(start=envelope_start, end=envelope_end, available=False)]
        else:
            if envelope_start < slots[0].start:
                slots.insert(0, TimeSlot(start=envelope_start, end=slots[0].start, available=False))
            if slots[-1].end < envelope_end:
                slots.append(TimeSlot(start=slots[-1].end, end=envelope_end, available=False))
        result.append(summarize(day, merge_contiguous(slots)))
    return result


def _available_blocks(windows: Iterable[AvailabilityWindow]) -> List[TimeSlot]:
    blocks = []
    for window in sorted(windows, key=lambda w: w.date):
        blocks.extend(s for s in merge_contiguous(window.slots) if s.available)
    blocks.sort(key=lambda s: s.start)
    return blocks


def find_best_slots(windows: Iterable[AvailabilityWindow], duration_minutes: int, count: int = 5) -> List[TimeSlot]:
    """Slots of exactly ``duration_minutes`` anchored at each qualifying free block, earliest first."""
    needed = timedelta(minutes=duration_minutes)
    found = []
    for block in _available_blocks(windows):
        if block.end - block.start >= needed:
            found.append(TimeSlot(start=block.start, end=block.start + needed, available=True))
            if len(found) >= count:
                break
    return found


def is_time_available(windows: Iterable[AvailabilityWindow], start: datetime, end: datetime) -> bool:
    start, end = as_utc(start), as_utc(end)
    return any(block.start <= start and block.end >= end for block in _available_blocks(windows))


def get_next_available_slot(windows: Iterable[AvailabilityWindow], after: datetime,
                            duration_minutes: int) -> Optional[TimeSlot]:
    """First slot of the requested length starting no earlier than ``after``."""
    after = as_utc(after)
    needed = timedelta(minutes=duration_minutes)
    for block in _available_blocks(windows):
        effective_start = max(block.start, after)
        if block.end - effective_start >= needed:
            return TimeSlot(start=effective_start, end=effective_start + needed, available=True)
    return None


def daily_stats(window: AvailabilityWindow) -> DailyStats:
    free_blocks = [s for s in merge_contiguous(window.slots) if s.available]
    total = window.total_free_minutes + window.total_busy_minutes
    return DailyStats(
        date=window.date,
        free_percentage=round(window.total_free_minutes / total * 100) if total > 0 else 0,
        largest_free_block_minutes=max((_minutes(s.start, s.end) for s in free_blocks), default=0),
        free_block_count=len(free_blocks),
    )


def filter_by_date_range(windows: Iterable[AvailabilityWindow], start_date: date,
                         end_date: date) -> List[AvailabilityWindow]:
    low, high = date_key(start_date), date_key(end_date)
    return [w for w in windows if low <= w.date <= high]


def get_free_slots(window: AvailabilityWindow, min_duration: Optional[int] = None) -> List[TimeSlot]:
    slots = [s for s in window.slots if s.available]
    if min_duration is not None:
        slots = [s for s in slots if s.duration_minutes >= min_duration]
    return slots


def sort_by_free_time(windows: Iterable[AvailabilityWindow]) -> List[AvailabilityWindow]:
    return sorted(windows, key=lambda w: w.total_free_minutes, reverse=True)


def find_windows_with_minimum_free_time(windows: Iterable[AvailabilityWindow],
                                        min_free_minutes: int) -> List[AvailabilityWindow]:
    return [w for w in windows if w.total_free_minutes >= min_free_minutes]


class AvailabilityService:
    """Free/busy windows computed from the local event store."""

    def __init__(self):
        # Explicitly invalidated; no time-based expiry
        self._cache = TTLCache(ttl_seconds=None, maxsize=256)

    def invalidate_user(self, user_id: str) -> int:
        return self._cache.invalidate_where(lambda key: key[0] == str(user_id))

    def _busy_ranges(self, db: Session, user_id: str, calendar_id: str,
                     range_start: datetime, range_end: datetime) -> List[Range]:
        rows = db.query(CalendarEvent).filter(
            CalendarEvent.user_id == user_id,
            CalendarEvent.calendar_id == calendar_id,
            CalendarEvent.status != "cancelled",
            CalendarEvent.start_time < range_end,
            CalendarEvent.end_time > range_start,
        ).all()
        # Buffers block time even though they are published as transparent
        return [
            (as_utc(row.start_time), as_utc(row.end_time))
            for row in rows
            if not row.transparent or row.buffer_role
        ]

    async def get_availability(
        self,
        db: Session,
        user_id: str,
        start_date: date,
        end_date: date,
        calendar_ids: Optional[List[str]] = None,
        working_hours: Optional[WorkingHours] = None,
        timezone: Optional[str] = None,
        include_protected: bool = True,
        refresh: bool = False
    ) -> AvailabilityResponse:
        """Intersected availability for the user's calendars over an inclusive date range."""
        if end_date < start_date:
            raise ValidationError("End date must be after start date")
        if (end_date - start_date).days + 1 > settings.MAX_AVAILABILITY_RANGE_DAYS:
            raise ValidationError(f"Date range cannot exceed {settings.MAX_AVAILABILITY_RANGE_DAYS} days")

        user = db.query(User).filter(User.id == user_id).first()
        preferences = load_preferences(user)
        working_hours = working_hours or preferences.working_hours
        tz_name = timezone or preferences.timezone
        get_zone(tz_name)
        calendar_ids = list(calendar_ids) if calendar_ids else get_enabled_calendar_ids(db, user_id)

        cache_key = (
            str(user_id), start_date.isoformat(), end_date.isoformat(), tuple(sorted(calendar_ids)),
            working_hours.start, working_hours.end, tz_name, include_protected
        )
        if not refresh:
            found, cached = self._cache.get(cache_key)
            if found:
                return cached

        try:
            days = date_range(start_date, end_date)
            # One extra day each side covers events crossing the local midnight
            range_start = at_local_time(start_date - timedelta(days=1), "00:00", tz_name)
            range_end = at_local_time(end_date + timedelta(days=2), "00:00", tz_name)

            protected: List[Range] = []
            if include_protected:
                slots = load_protected_slots(db, user_id, preferences)
                protected = [(p.start, p.end) for p in get_protected_times(start_date, end_date, slots, tz_name)]

            per_calendar = []
            for calendar_id in calendar_ids:
                busy = self._busy_ranges(db, user_id, calendar_id, range_start, range_end) + protected
                per_calendar.append([
                    summarize(date_key(day), generate_time_slots(day, working_hours, busy, tz_name))
                    for day in days
                ])

            availability = [merge_window(w) for w in intersect(per_calendar)]
            response = AvailabilityResponse(
                availability=availability,
                calendars_checked=calendar_ids,
                total_available_minutes=sum(w.total_free_minutes for w in availability),
            )
            self._cache.set(cache_key, response)

            logger.info(
                "Availability calculated",
                user_id=user_id,
                days=len(availability),
                calendars=len(calendar_ids),
                total_available_minutes=response.total_available_minutes
            )
            return response

        except Exception as e:
            logger.error("Failed to calculate availability", user_id=user_id, error=str(e))
            raise


# Global availability service instance
availability_service = AvailabilityService()
