#!/usr/bin/env python3
"""
auto-commit: randomized commit stream generator for backfills and cron schedules
"""

import argparse
import enum
import json
import logging
import os
import random
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from tzlocal import get_localzone

logger = logging.getLogger("auto-commit")

WORKDAY_START_HOUR = 8
WORKDAY_HOURS = 12
DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y"]
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
# Day-of-week numbers as in seconds-first (Quartz) cron: 1 = sun .. 7 = sat, 0 = sun
WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


class AutoCommitError(Exception):
    """Base class for every error raised by auto-commit."""


class InvalidDateFormat(AutoCommitError, ValueError):
    """A date string could not be parsed as a calendar date."""


class InvalidRange(AutoCommitError, ValueError):
    """Commit bounds or date range are inconsistent."""


class InvalidSchedule(AutoCommitError, ValueError):
    """The cron expression is malformed."""


class FileWriteFailed(AutoCommitError):
    """The marker file could not be written."""


class CommandFailed(AutoCommitError):
    """A git command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], stderr: str):
        self.command = shlex.join(command)
        self.stderr = stderr.strip()
        super().__init__(f"Command failed: {self.command}\n{self.stderr}")


@dataclass(frozen=True)
class DailyPlan:
    """Commit quota for one calendar day."""

    date: date
    commit_count: int


@dataclass(frozen=True)
class TimestampSlot:
    """Hour and minute picked for one commit slot."""

    hour: int
    minute: int

    def on(self, day: date, tz: Optional[tzinfo] = None) -> datetime:
        return datetime(day.year, day.month, day.day, self.hour, self.minute, tzinfo=tz)


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str


def parse_date(date_str: str) -> date:
    """Parse date from various formats."""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(date_str, fmt).date()
        except ValueError:
            continue
    raise InvalidDateFormat(f"Unable to parse date: {date_str}")


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Named zone, or the machine's local zone when no name is given."""
    if name is None:
        return get_localzone()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidSchedule(f"Unknown timezone: {name}") from e


@dataclass
class Config:
    """Configuration for commit generation."""

    # Repository
    repo_path: Path = field(default_factory=lambda: Path("."))
    marker_file: str = "commit.md"
    commit_message: str = "commit for update"

    # Daily quota, max is exclusive
    min_commit: int = 10
    max_commit: int = 25

    # OneShot range, ignored when cron_expression is set
    start_date: date = field(default_factory=date.today)
    end_date: date = field(default_factory=date.today)

    # Recurring mode
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    reroll_each_trigger: bool = False

    # Runtime options
    random_seed: Optional[int] = None
    dry_run: bool = False

    @property
    def recurring(self) -> bool:
        return self.cron_expression is not None

    def validate(self) -> None:
        """Validate all configuration parameters."""
        errors = []

        if self.min_commit < 0 or self.max_commit < 0:
            errors.append("min_commit and max_commit must be >= 0")
        if self.min_commit > self.max_commit:
            errors.append(
                f"min_commit ({self.min_commit}) must be <= max_commit ({self.max_commit})"
            )
        if not self.recurring and self.start_date > self.end_date:
            errors.append("start_date must be <= end_date")

        if errors:
            raise InvalidRange(
                "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            )

        if self.recurring:
            CronSchedule(self.cron_expression, self.timezone)
        else:
            resolve_timezone(self.timezone)

    @staticmethod
    def deserialize(data: dict) -> "Config":
        """Load Config from dictionary with type conversions."""
        data = data.copy()

        for key in ["start_date", "end_date"]:
            if isinstance(data.get(key), str):
                data[key] = parse_date(data[key])

        if isinstance(data.get("repo_path"), str):
            data["repo_path"] = Path(data["repo_path"])

        config = Config(**data)
        config.validate()
        return config

    def serialize(self) -> dict:
        """Save Config to dictionary with type conversions."""
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        data["repo_path"] = str(self.repo_path)
        return data


def draw_quota(rng: random.Random, min_commit: int, max_commit: int) -> int:
    """Draw a commit count from [min_commit, max_commit), or min_commit if equal."""
    if min_commit > max_commit:
        raise InvalidRange(f"min ({min_commit}) must be <= max ({max_commit})")
    if min_commit == max_commit:
        return min_commit
    return rng.randrange(min_commit, max_commit)


class DateRangeExpander:
    """Turns an inclusive date range into per-day commit quotas."""

    def __init__(self, min_commit: int, max_commit: int, rng: random.Random):
        if min_commit > max_commit:
            raise InvalidRange(f"min ({min_commit}) must be <= max ({max_commit})")
        self.min_commit = min_commit
        self.max_commit = max_commit
        self.rng = rng

    def expand(self, start: date, end: date) -> List[DailyPlan]:
        """One plan per day from start to end inclusive, ascending."""
        if start > end:
            raise InvalidRange(f"start date {start} is after end date {end}")

        plans = []
        current = start
        while current <= end:
            plans.append(
                DailyPlan(
                    date=current,
                    commit_count=draw_quota(self.rng, self.min_commit, self.max_commit),
                )
            )
            current += timedelta(days=1)
        return plans


class TimeSlotAllocator:
    """Spreads a day's commits over the 08:00-20:00 working window.

    The window is cut into ``total`` consecutive hour bands. The first
    ``12 % total`` bands are one hour wider so the twelve hours are used up
    exactly. Each slot gets a random hour inside its own band (both ends
    inclusive) and an independent random minute in [0, 59).
    """

    def __init__(self, rng: random.Random):
        self.rng = rng

    @staticmethod
    def hour_band(total: int, index: int) -> Tuple[int, int]:
        """Inclusive (start, end) hours of the band for slot ``index``."""
        if total < 1:
            raise ValueError(f"total must be >= 1, got {total}")
        if not 0 <= index < total:
            raise ValueError(f"slot index {index} out of range for {total} slots")

        batch_size = WORKDAY_HOURS // total
        extra = WORKDAY_HOURS % total

        start = WORKDAY_START_HOUR + index * batch_size + min(extra, index)
        end = start + batch_size + (1 if extra > index else 0)
        return start, end

    def slot(self, total: int, index: int) -> TimestampSlot:
        start, end = self.hour_band(total, index)
        return TimestampSlot(
            hour=self.rng.randint(start, end),
            minute=self.rng.randrange(0, 59),
        )

    def pick(
        self, day: date, total: int, index: int, tz: Optional[tzinfo] = None
    ) -> datetime:
        """Random timestamp on ``day`` for slot ``index`` of ``total``."""
        return self.slot(total, index).on(day, tz)


class CommandExecutor(Protocol):
    def execute(
        self, command: Sequence[str], cwd: Path, env: Optional[dict] = None
    ) -> CommandOutput: ...


class FileWriter(Protocol):
    def write(self, path: Path, content: str) -> None: ...


class ShellExecutor:
    """Runs commands in the repository directory."""

    def execute(
        self, command: Sequence[str], cwd: Path, env: Optional[dict] = None
    ) -> CommandOutput:
        """Run a command, raising CommandFailed on a non-zero exit."""
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        logger.debug("Running %s in %s", shlex.join(command), cwd)
        try:
            result = subprocess.run(
                list(command),
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise CommandFailed(command, str(e)) from e

        if result.returncode != 0:
            raise CommandFailed(command, result.stderr)
        return CommandOutput(stdout=result.stdout, stderr=result.stderr)


class DryRunExecutor:
    """Logs commands instead of running them."""

    def __init__(self):
        self.commands: List[str] = []

    def execute(
        self, command: Sequence[str], cwd: Path, env: Optional[dict] = None
    ) -> CommandOutput:
        rendered = shlex.join(command)
        self.commands.append(rendered)
        logger.info("[dry-run] %s", rendered)
        return CommandOutput(stdout="", stderr="")


class MarkerWriter:
    """Writes the marker file that makes every commit non-empty."""

    def write(self, path: Path, content: str) -> None:
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise FileWriteFailed(f"Unable to write {path}: {e}") from e


class DryRunMarkerWriter:
    def write(self, path: Path, content: str) -> None:
        logger.debug("[dry-run] write %s", path)


class CommitPipeline:
    """Turns timestamps into commits: rewrite marker, stage, commit."""

    def __init__(
        self,
        config: Config,
        executor: CommandExecutor,
        writer: FileWriter,
        allocator: TimeSlotAllocator,
        rng: random.Random,
    ):
        self.config = config
        self.timezone = resolve_timezone(config.timezone)
        self.executor = executor
        self.writer = writer
        self.allocator = allocator
        self.rng = rng

    @property
    def marker_path(self) -> Path:
        return self.config.repo_path / self.config.marker_file

    def run_day(self, day: date, total: int) -> int:
        """Create ``total`` commits spread over ``day``; return how many were made.

        Timestamps carry the offset of the configured zone so the working
        hours hold there, whatever zone git runs in.
        """
        for index in range(total):
            self.commit(self.allocator.pick(day, total, index, self.timezone))
        return total

    def commit(self, timestamp: datetime) -> None:
        """Create a single commit with backdated timestamp."""
        timestamp_str = format_timestamp(timestamp)

        try:
            self._reset_marker(timestamp_str)
        except FileWriteFailed as e:
            # The commit is still attempted, git decides whether it is empty.
            logger.warning("Marker update failed, committing anyway: %s", e)

        env = {
            "GIT_AUTHOR_DATE": timestamp_str,
            "GIT_COMMITTER_DATE": timestamp_str,
        }
        self._run_git(["git", "add", "."])
        self._run_git(
            [
                "git",
                "commit",
                "--date",
                timestamp_str,
                "-m",
                self.config.commit_message,
            ],
            env=env,
        )
        logger.info("Committed at %s", timestamp_str)

    def push(self) -> None:
        """Rebase onto the remote and push."""
        self._run_git(["git", "pull", "--rebase"])
        self._run_git(["git", "push"])
        logger.info("Pushed commits from %s", self.config.repo_path)

    def _reset_marker(self, timestamp_str: str) -> None:
        content = f"{timestamp_str}\nrandom: {self.rng.randint(1, 100000)}"
        self.writer.write(self.marker_path, content)

    def _run_git(self, cmd: List[str], env: Optional[dict] = None) -> CommandOutput:
        return self.executor.execute(cmd, self.config.repo_path, env)


class CronSchedule:
    """Six-field cron expression (seconds first) with an optional year field."""

    FIELDS = ["second", "minute", "hour", "day", "month", "day_of_week", "year"]

    def __init__(self, expression: str, timezone: Optional[str] = None):
        self.expression = expression
        self.timezone = resolve_timezone(timezone)

        parts = expression.split()
        if len(parts) not in (6, 7):
            raise InvalidSchedule(
                f"Cron expression needs 6 or 7 fields, got {len(parts)}: {expression!r}"
            )

        values = {
            name: ("*" if value == "?" else value)
            for name, value in zip(self.FIELDS, parts)
        }
        values["day_of_week"] = self.weekday_names(values["day_of_week"])
        try:
            self.trigger = CronTrigger(timezone=self.timezone, **values)
        except ValueError as e:
            raise InvalidSchedule(f"Invalid cron expression {expression!r}: {e}") from e

    @staticmethod
    def weekday_names(value: str) -> str:
        """Rewrite numeric day-of-week tokens as names.

        APScheduler numbers weekdays from monday, cron from sunday. Numeric
        tokens (``n``, ``a-b``, ``*/s``, ``a-b/s``, ``a/s``) are expanded to
        an explicit list of names so ranges over sunday keep their meaning.
        Tokens spelled with names pass through unchanged.
        """
        if not any(ch.isdigit() for ch in value):
            return value

        tokens = []
        for token in value.split(","):
            if any(ch.isalpha() for ch in token):
                tokens.append(token)
                continue

            span, _, step_text = token.partition("/")
            try:
                step = int(step_text) if step_text else 1
                if span == "*":
                    first, last = 1, 7
                elif "-" in span:
                    first_text, last_text = span.split("-", 1)
                    first, last = int(first_text), int(last_text)
                else:
                    first = int(span)
                    last = 7 if step_text else first
            except ValueError as e:
                raise InvalidSchedule(f"Invalid day-of-week token {token!r}") from e

            if not 0 <= first <= last <= 7 or step < 1:
                raise InvalidSchedule(f"Invalid day-of-week token {token!r}")

            for number in range(first, last + 1, step):
                name = WEEKDAY_NAMES[(number - 1) % 7] if number else "sun"
                if name not in tokens:
                    tokens.append(name)
        return ",".join(tokens)

    def now(self) -> datetime:
        return datetime.now(self.timezone)

    def next_after(self, instant: datetime) -> datetime:
        """First fire time strictly later than ``instant``."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.timezone)
        # The trigger rounds up to whole seconds and may return ``instant``
        # itself, so start looking one microsecond later.
        fire = self.trigger.get_next_fire_time(
            None, instant + timedelta(microseconds=1)
        )
        if fire is None:
            raise InvalidSchedule(
                f"Cron expression {self.expression!r} never fires after {instant}"
            )
        return fire


class Phase(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    EXECUTING = "executing"


@dataclass
class RecurringState:
    """Loop state of the recurring scheduler."""

    quota: int
    phase: Phase = Phase.IDLE
    next_fire: Optional[datetime] = None
    last_fire: Optional[datetime] = None
    cycles: int = 0
    delivered: int = 0


class Scheduler:
    """Drives the commit pipeline in OneShot or Recurring mode."""

    def __init__(
        self,
        config: Config,
        executor: Optional[CommandExecutor] = None,
        writer: Optional[FileWriter] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.rng = rng or random.Random(config.random_seed)
        if executor is None:
            executor = DryRunExecutor() if config.dry_run else ShellExecutor()
        if writer is None:
            writer = DryRunMarkerWriter() if config.dry_run else MarkerWriter()
        self.pipeline = CommitPipeline(
            config, executor, writer, TimeSlotAllocator(self.rng), self.rng
        )
        self.sleep = sleep
        self.clock = clock
        self.state: Optional[RecurringState] = None

    def run(self) -> int:
        """Run in the mode selected by the configuration."""
        if self.config.recurring:
            return self.run_recurring()
        return self.run_once()

    def run_once(self) -> int:
        """Backfill every day of the configured range, then push once."""
        expander = DateRangeExpander(
            self.config.min_commit, self.config.max_commit, self.rng
        )
        plans = expander.expand(self.config.start_date, self.config.end_date)

        total = 0
        for plan in plans:
            logger.info("%s: %d commits planned", plan.date, plan.commit_count)
            total += self.pipeline.run_day(plan.date, plan.commit_count)

        self.pipeline.push()
        logger.info("Pushed %d commits in total", total)
        return total

    def run_recurring(self, max_cycles: Optional[int] = None) -> int:
        """Commit on every cron trigger, forever unless ``max_cycles`` is given."""
        schedule = CronSchedule(self.config.cron_expression, self.config.timezone)
        clock = self.clock or schedule.now

        self.state = RecurringState(quota=self._draw_quota())
        logger.info("Recurring commit task, cron expression [%s]", schedule.expression)

        while max_cycles is None or self.state.cycles < max_cycles:
            self._wait_for_trigger(schedule, clock)
            self._execute_cycle(clock)

        return self.state.delivered

    def _draw_quota(self) -> int:
        return draw_quota(self.rng, self.config.min_commit, self.config.max_commit)

    def _wait_for_trigger(self, schedule: CronSchedule, clock) -> None:
        state = self.state
        now = clock()
        reference = now if state.last_fire is None else max(now, state.last_fire)

        state.phase = Phase.WAITING
        state.next_fire = schedule.next_after(reference)
        logger.info("Next run at [%s]", state.next_fire)

        delay = (state.next_fire - now).total_seconds()
        if delay > 0:
            self.sleep(delay)

    def _execute_cycle(self, clock) -> None:
        state = self.state
        state.phase = Phase.EXECUTING
        state.last_fire = state.next_fire
        state.cycles += 1

        if self.config.reroll_each_trigger:
            state.quota = self._draw_quota()

        day = clock().astimezone(self.pipeline.timezone).date()
        try:
            made = self.pipeline.run_day(day, state.quota)
            self.pipeline.push()
        except CommandFailed as e:
            logger.error("Cycle for %s failed, waiting for next trigger: %s", day, e)
        else:
            state.delivered += made
            logger.info("[%s] pushed %d commits", day, made)
        finally:
            state.phase = Phase.WAITING


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration from file or create default."""
    if args.config:
        with open(args.config) as f:
            config_dict = json.load(f)

        default_dict = Config().serialize()
        default_dict.update(config_dict)

        return Config.deserialize(default_dict)

    return Config()


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command-line argument overrides to config."""
    if args.dir is not None:
        config.repo_path = args.dir

    if args.min is not None:
        config.min_commit = args.min

    if args.max is not None:
        config.max_commit = args.max

    if args.cron:
        config.cron_expression = args.cron

    if args.message:
        config.commit_message = args.message

    if args.period:
        config.start_date = parse_date(args.period[0])
        config.end_date = parse_date(args.period[1])

    if args.marker_file:
        config.marker_file = args.marker_file

    if args.timezone:
        config.timezone = args.timezone

    if args.reroll:
        config.reroll_each_trigger = True

    if args.seed is not None:
        config.random_seed = args.seed

    if args.dry_run:
        config.dry_run = True

    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auto-commit",
        description="Generate randomized commits over a date range or on a cron schedule",
    )

    # Repository arguments
    parser.add_argument("--dir", type=Path, help="Repository to commit to (default: .)")
    parser.add_argument("-m", "--message", help="Commit message")
    parser.add_argument("--marker-file", help="File rewritten before every commit")

    # Quota arguments
    parser.add_argument("--min", type=int, help="Minimum commits per day (default: 10)")
    parser.add_argument(
        "--max", type=int, help="Maximum commits per day, exclusive (default: 25)"
    )

    # Schedule arguments
    parser.add_argument(
        "-p",
        "--period",
        nargs=2,
        metavar=("START", "END"),
        help="Date range to backfill (default: today today)",
    )
    parser.add_argument(
        "--cron", help="6-field cron expression; switches to recurring mode"
    )
    parser.add_argument("--timezone", help="Timezone for cron triggers (default: local)")
    parser.add_argument(
        "--reroll",
        action="store_true",
        help="Draw a new commit count on every cron trigger",
    )

    # Configuration file
    parser.add_argument("--config", type=Path, help="Load configuration from JSON")
    parser.add_argument("--save-config", type=Path, help="Save configuration to JSON")

    # Runtime options
    parser.add_argument("--seed", type=int, help="Random seed for reproducibility")
    parser.add_argument(
        "--dry-run", action="store_true", help="Log git commands without running them"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        config = apply_cli_overrides(load_config(args), args)
        config.validate()
    except (ValueError, TypeError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.save_config:
        with open(args.save_config, "w") as f:
            json.dump(config.serialize(), f, indent=2)
        print(f"Configuration saved to {args.save_config}")

    scheduler = Scheduler(config)
    try:
        total = scheduler.run()
    except AutoCommitError as e:
        print(f"Run failed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130

    print(f"Successfully pushed {total} commits")
    return 0


if __name__ == "__main__":
    sys.exit(main())
