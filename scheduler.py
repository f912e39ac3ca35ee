#!/usr/bin/env python3
"""
Batch run scheduler.

Runs every active subscription at the times of day listed under `schedule`
in bot.yaml. Both layouts are accepted:

    schedule:
      - time: "08:00"
      - "18:30"

    schedule:
      timezone: Asia/Shanghai
      times: ["08:00", "18:30"]

Times are local to the schedule timezone (bot.yaml, else SCHEDULER_TIMEZONE,
else UTC); all arithmetic happens in UTC.
"""

import asyncio
import yaml
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import config, get_logger
from entities import RunOutcome
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("scheduler")
init_telemetry("rss-relay-scheduler")

# Wait this long after an unexpected loop error before trying again
ERROR_BACKOFF_SECONDS = 60


class ScheduleEntry:
    """One run time of day."""

    def __init__(self, time_str: str):
        """Parse "HH:MM" or "H:MM".

        Raises:
            ValueError: If the time is malformed or out of range.
        """
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    @staticmethod
    def _parse_time(time_str: str) -> time:
        parts = time_str.split(':')
        if len(parts) != 2:
            raise ValueError(f"Time must be in HH:MM format, got: {time_str}")
        try:
            hour, minute = int(parts[0]), int(parts[1])
        except ValueError as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}") from e
        if not (0 <= hour <= 23):
            raise ValueError(f"Hour must be 0-23, got: {hour}")
        if not (0 <= minute <= 59):
            raise ValueError(f"Minute must be 0-59, got: {minute}")
        return time(hour=hour, minute=minute)

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence strictly after `from_time`, returned in UTC."""
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate <= ref_local:
            candidate = datetime.combine(ref_local.date() + timedelta(days=1), self.time, tzinfo=tz)
        return candidate.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def _zone(name: str):
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class RelayScheduler:
    """Sleep until the next configured time, run the batch, repeat."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or config.BOT_CONFIG_PATH
        self.schedule_entries: List[ScheduleEntry] = []
        self.schedule_timezone_name = config.SCHEDULER_TIMEZONE or "UTC"
        try:
            self.schedule_timezone = _zone(self.schedule_timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid timezone '{self.schedule_timezone_name}', falling back to UTC")
            self.schedule_timezone_name = "UTC"
            self.schedule_timezone = timezone.utc
        self._load_schedule()

    def _load_schedule(self) -> None:
        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            data = None
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading schedule from {self.config_path}: {e}")
            data = None
        if not isinstance(data, dict):
            logger.warning(f"No schedule found in {self.config_path}")
            return

        schedule = data.get('schedule')
        if isinstance(schedule, list):
            raw_entries = schedule
        elif isinstance(schedule, dict):
            tz_name = schedule.get('timezone') or schedule.get('tz')
            if tz_name:
                try:
                    self.schedule_timezone = _zone(str(tz_name))
                    self.schedule_timezone_name = str(tz_name)
                except (ZoneInfoNotFoundError, ValueError):
                    logger.error(f"Invalid schedule timezone '{tz_name}', keeping '{self.schedule_timezone_name}'")
            raw_entries = schedule.get('times') or []
            if not isinstance(raw_entries, list):
                logger.error("Schedule 'times' must be a list, ignoring")
                raw_entries = []
        else:
            raw_entries = []

        entries: List[ScheduleEntry] = []
        for entry in raw_entries:
            raw = entry.get('time') if isinstance(entry, dict) else entry
            if not isinstance(raw, str):
                logger.warning(f"Invalid schedule entry format: {entry}")
                continue
            try:
                entries.append(ScheduleEntry(raw))
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {entry}: {e}")
        self.schedule_entries = entries
        if entries:
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): "
                        f"{', '.join(e.time_str for e in entries)}")

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        if not self.schedule_entries:
            return None
        from_time = from_time or datetime.now(timezone.utc)
        return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = (next_run - now).total_seconds() if next_run else None
        return {
            'current_time': now.isoformat(),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'schedule_active': bool(self.schedule_entries),
            'next_run_time': next_run.isoformat() if next_run else None,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()
        print("\nScheduler Status")
        print(f"Current time: {status['current_time']}")
        print(f"Timezone: {status['schedule_timezone']}")
        if status['schedule_active']:
            print(f"Scheduled times: {', '.join(status['schedule_times'])}")
            print(f"Next run: {status['next_run_time']} (in {status['minutes_until_next_run']:.1f} minutes)")
        else:
            print("No schedule configured")

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span("scheduler.batch_run", tracer_name="scheduler")
    async def _run_batch(self, run_all: Callable[[], Awaitable[list]]) -> None:
        started = datetime.now(timezone.utc)
        reports = await run_all()
        failed = [r.subscription_id for r in reports if r.outcome == RunOutcome.FAILED]
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        if failed:
            logger.warning(f"Scheduled run finished in {duration:.1f}s with failures: {', '.join(failed)}")
        else:
            logger.info(f"Scheduled run finished in {duration:.1f}s ({len(reports)} subscriptions)")

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run(self, run_all: Callable[[], Awaitable[list]]) -> None:
        """Run `run_all` at every scheduled time until cancelled."""
        if not self.schedule_entries:
            logger.error(f"No schedule configured in {self.config_path}, not starting")
            return

        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("Running immediately on startup (SCHEDULER_RUN_IMMEDIATELY=true)")
            try:
                await self._run_batch(run_all)
            except Exception as e:
                logger.error(f"Error in startup run: {e}")

        while True:
            try:
                next_time = self.get_next_run_time()
                now = datetime.now(timezone.utc)
                # One extra second so we never wake up just before the slot
                sleep_time = max(1.0, (next_time - now).total_seconds() + 1)
                logger.info(f"Sleeping {sleep_time / 60:.1f} minutes until {next_time.isoformat()}")
                await self._sleep_until(next_time, sleep_time)
                await self._run_batch(run_all)
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled, shutting down")
                break
            except Exception as e:
                logger.error(f"Error in scheduled run: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)


def create_scheduler(config_path: Optional[str] = None) -> RelayScheduler:
    return RelayScheduler(config_path)
