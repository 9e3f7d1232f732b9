#!/usr/bin/env python3
"""
cfc.py

Cron-style scheduler for container jobs. Job definitions come from a static
config file (INI or YAML) and from container labels; they are merged into one
registry snapshot, evaluated against cron/interval schedules and dispatched to
the Docker engine or the host.
"""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import os
import re
import shlex
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from queue import Queue
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None

try:
    import docker
    from docker import errors as docker_errors
    from docker.types import RestartPolicy
except ImportError:  # pragma: no cover - dependency check at runtime
    docker = None
    docker_errors = None
    RestartPolicy = None


DEFAULT_CONFIG = "/etc/cfc.conf"
OFELIA_CONFIG = "/etc/ofelia.conf"
DEFAULT_LABEL_PREFIX = "cfc"
OFELIA_LABEL_PREFIX = "ofelia"
DEFAULT_MAX_CONCURRENCY = 32
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_HISTORY_SIZE = 20
DEFAULT_PREVIEW_COUNT = 5
OUTPUT_CAPTURE_LIMIT = 64 * 1024
POLL_SECONDS = 0.5
EVENT_RETRY_SECONDS = 5.0
CANCEL_WAIT_SECONDS = 5.0
MAX_WAIT_SECONDS = 60.0
DOCKER_ENV_MARKER = "/.dockerenv"
MANAGED_LABEL = "cfc.managed"

KIND_EXEC = "job-exec"
KIND_RUN = "job-run"
KIND_LOCAL = "job-local"
KIND_SERVICE_RUN = "job-service-run"
JOB_KINDS = (KIND_EXEC, KIND_RUN, KIND_LOCAL, KIND_SERVICE_RUN)

CONVENTION_CFC = "cfc"
CONVENTION_OFELIA = "ofelia"

SOURCE_FILE = "file"
SOURCE_LABELS = "labels"
SOURCE_PRIORITY = {SOURCE_FILE: 0, SOURCE_LABELS: 10}

OUTCOME_SUCCESS = "success"
OUTCOME_EXECUTION_FAILURE = "execution_failure"
OUTCOME_TARGET_UNAVAILABLE = "target_unavailable"
OUTCOME_RUNTIME_UNREACHABLE = "runtime_unreachable"
OUTCOME_CANCELLED = "cancelled"

CAPABILITY_CONTAINER = "container-runtime"
CAPABILITY_HOST = "host"

SCHEDULE_CRON = "cron"
SCHEDULE_EVERY = "every"

EVENT_ADDED = "added"
EVENT_UPDATED = "updated"
EVENT_REMOVED = "removed"
DOCKER_START_ACTIONS = {"start", "unpause"}
DOCKER_STOP_ACTIONS = {"die", "stop", "destroy", "pause"}

GUARD_ACQUIRED = "acquired"
GUARD_SKIPPED = "skipped"
GUARD_NO_SLOT = "no_slot"

SERVICE_TERMINAL_STATES = {"complete", "failed", "rejected", "shutdown", "orphaned"}

CRON_MACROS = {
    "@yearly": "0 0 0 1 1 *",
    "@annually": "0 0 0 1 1 *",
    "@monthly": "0 0 0 1 * *",
    "@weekly": "0 0 0 * * 0",
    "@daily": "0 0 0 * * *",
    "@midnight": "0 0 0 * * *",
    "@hourly": "0 0 * * * *",
}
CRON_FIELDS = (
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)
DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
DAY_NAME_TO_CRON.update({name[:3]: num for name, num in list(DAY_NAME_TO_CRON.items())})
MONTH_NAME_TO_NUM = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
MONTH_NAME_TO_NUM.update({name[:3]: num for name, num in list(MONTH_NAME_TO_NUM.items())})
MONTH_MAX_DAYS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}
DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

EVERY_RE = re.compile(r"^@every\s+(\S+)$", re.IGNORECASE)
DURATION_RE = re.compile(r"^(?:\d+(?:ms|s|m|h|d))+$")
DURATION_PART_RE = re.compile(r"(\d+)(ms|s|m|h|d)")
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
INI_SECTION_RE = re.compile(r'^(?P<kind>[\w-]+)\s+"(?P<name>[^"]+)"$')
SERVICE_NAME_RE = re.compile(r"[^a-zA-Z0-9-]+")
BOOL_TRUE = {"true", "yes", "on", "1"}
BOOL_FALSE = {"false", "no", "off", "0"}
VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)

COMMON_FIELDS = frozenset({"schedule", "command", "allow-overlap", "enabled"})
KIND_FIELDS = {
    KIND_EXEC: frozenset({"container", "user", "tty", "environment", "workdir"}),
    KIND_RUN: frozenset(
        {
            "image",
            "container",
            "user",
            "network",
            "hostname",
            "delete",
            "tty",
            "volume",
            "environment",
            "timeout",
        }
    ),
    KIND_LOCAL: frozenset({"dir", "environment"}),
    KIND_SERVICE_RUN: frozenset(
        {"image", "user", "network", "delete", "tty", "environment", "timeout"}
    ),
}
LIST_LABEL_PARAMS = {"environment", "volume", "network"}


class CfcError(Exception):
    """Base error for cfc."""


class ConfigError(CfcError):
    """Unreadable config file or bad command-line value."""


class ValidationError(CfcError):
    """Job descriptor rejected while building the registry."""


class InvalidSchedule(ValidationError):
    """Schedule text that does not parse or can never fire."""


class RegistryConflict(CfcError):
    """Two sources report one job key with the same precedence."""

    def __init__(self, job_key: str, source_ids: List[str]):
        self.job_key = job_key
        self.source_ids = list(source_ids)
        super().__init__(
            f'Error: Job "{job_key}" is defined with equal precedence by '
            f"{', '.join(self.source_ids)}; using {self.source_ids[-1]}."
        )


class ExecutionFailure(CfcError):
    """Command ran but failed or did not finish in time."""


class TargetUnavailable(CfcError):
    """Container, image, service or executable could not be used."""


class RuntimeUnreachable(CfcError):
    """The container runtime endpoint did not answer."""


class Cancelled(CfcError):
    """Run cancelled during shutdown."""


def setup_logging(verbosity: int = 0, log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("cfc")
    logger.setLevel(VERBOSITY_LEVELS[max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))])
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handlers = [
        handler
        for handler in logger.handlers
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
    ]
    if stream_handlers:
        for handler in stream_handlers:
            handler.setStream(sys.stdout)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file:
        target = str(Path(log_file).resolve())
        if not any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == target
            for handler in logger.handlers
        ):
            file_handler = logging.FileHandler(target, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger


logger = logging.getLogger("cfc")
UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def require_yaml_dependency() -> None:
    if yaml is None:
        raise CfcError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise CfcError("Missing required dependency: croniter. Install with: pip install croniter")


def require_docker_dependency() -> None:
    if docker is None:
        raise CfcError("Missing required dependency: docker. Install with: pip install docker")


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    localtime = Path("/etc/localtime")
    if localtime.is_symlink():
        resolved = str(localtime.resolve())
        if "zoneinfo/" in resolved:
            name = resolved.split("zoneinfo/", 1)[1]
            try:
                return ZoneInfo(name), name
            except (ZoneInfoNotFoundError, ValueError):
                pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Schedules


@dataclass(frozen=True)
class Schedule:
    text: str
    kind: str  # cron | every
    expression: Optional[str]  # six fields, seconds first
    interval: Optional[timedelta]
    timezone: ZoneInfo

    @property
    def description(self) -> str:
        if self.kind == SCHEDULE_EVERY and self.interval is not None:
            return f"Every {format_duration(self.interval)}"
        zone_name = getattr(self.timezone, "key", str(self.timezone))
        return f"Cron {self.expression} ({zone_name})"


def parse_schedule(text: Any, tz: Optional[ZoneInfo] = None, field_path: str = "schedule") -> Schedule:
    if not isinstance(text, str) or not text.strip():
        raise InvalidSchedule(f"Error: {field_path} must be a non-empty schedule.")
    raw = " ".join(text.split())
    zone = tz or system_timezone()[0]
    lowered = raw.lower()

    if lowered.startswith("@every"):
        match = EVERY_RE.match(raw)
        if not match:
            raise InvalidSchedule(f'Error: Expected "@every <duration>" at {field_path}, got "{raw}".')
        interval = parse_duration(match.group(1), field_path)
        return Schedule(text=raw, kind=SCHEDULE_EVERY, expression=None, interval=interval, timezone=zone)

    if raw.startswith("@"):
        expression = CRON_MACROS.get(lowered)
        if expression is None:
            raise InvalidSchedule(f'Error: Unknown schedule macro "{raw}" at {field_path}.')
    else:
        expression = normalize_cron_expression(raw, field_path)
    expression = _ensure_satisfiable(expression, raw, field_path)
    return Schedule(text=raw, kind=SCHEDULE_CRON, expression=expression, interval=None, timezone=zone)


def parse_duration(value: str, field_path: str) -> timedelta:
    token = value.strip().lower()
    if not DURATION_RE.match(token):
        raise InvalidSchedule(f'Error: Invalid duration "{value}" at {field_path}.')
    total = timedelta()
    for amount, unit in DURATION_PART_RE.findall(token):
        total += int(amount) * DURATION_UNITS[unit]
    if total <= timedelta(0):
        raise InvalidSchedule(f'Error: Duration "{value}" must be positive at {field_path}.')
    return total


def format_duration(delta: timedelta) -> str:
    remaining = int(delta.total_seconds() * 1000)
    parts: List[str] = []
    for unit, size in (("d", 86_400_000), ("h", 3_600_000), ("m", 60_000), ("s", 1000), ("ms", 1)):
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return "".join(parts) or "0s"


def normalize_cron_expression(raw: str, field_path: str) -> str:
    fields = raw.split()
    if len(fields) == 5:
        fields = ["0", *fields]
    elif len(fields) != 6:
        raise InvalidSchedule(
            f"Error: {field_path} must have 5 or 6 cron fields, got {len(fields)} in \"{raw}\"."
        )

    normalized: List[str] = []
    for (name, min_value, max_value), token in zip(CRON_FIELDS, fields):
        token_path = f"{field_path}.{name}"
        token = token.lower()
        if name in {"day_of_month", "day_of_week"} and token == "?":
            token = "*"
        if name == "month":
            token = replace_named_tokens(token, MONTH_NAME_TO_NUM, token_path)
        elif name == "day_of_week":
            token = replace_named_tokens(token, DAY_NAME_TO_CRON, token_path)
        token = validate_cron_token(token, token_path, min_value, max_value)
        if name == "day_of_week":
            token = _fold_sunday(token)
        normalized.append(token)
    return " ".join(normalized)


def _fold_sunday(token: str) -> str:
    # croniter only knows 0-6; 7 is Sunday.
    folded: List[str] = []
    for part in token.split(","):
        if part.partition("/")[0] != "*":
            values = _expand_cron_token(part, 0, 7)
            if 7 in values:
                part = ",".join(str(value) for value in sorted({0 if value == 7 else value for value in values}))
        for piece in part.split(","):
            if piece not in folded:
                folded.append(piece)
    return ",".join(folded)


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise InvalidSchedule(f'Error: Invalid token "{token}" at {field_path}.')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def validate_cron_token(token: str, field_path: str, min_value: int, max_value: int) -> str:
    if not token:
        raise InvalidSchedule(f"Error: {field_path} cannot be empty.")
    if not CRON_FIELD_RE.match(token):
        raise InvalidSchedule(f'Error: Invalid cron token "{token}" at {field_path}.')

    for part in token.split(","):
        if not part:
            raise InvalidSchedule(f'Error: Invalid cron token "{token}" at {field_path}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise InvalidSchedule(f'Error: Invalid step "{part}" at {field_path}.')
            if base == "*":
                continue
            _validate_range_or_single(base, field_path, min_value, max_value)
            if int(step_str) > (max_value - min_value + 1):
                raise InvalidSchedule(f'Error: Step "{step_str}" too large at {field_path}.')
            continue
        _validate_range_or_single(part, field_path, min_value, max_value)
    return token


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise InvalidSchedule(f'Error: Invalid range "{token}" at {field_path}.')
        start = int(left)
        end = int(right)
        if start > end:
            raise InvalidSchedule(f'Error: Invalid range "{token}" at {field_path}.')
        if start < min_value or end > max_value:
            raise InvalidSchedule(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.'
            )
        return
    if not token.isdigit():
        raise InvalidSchedule(f'Error: Invalid token "{token}" at {field_path}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise InvalidSchedule(
            f'Error: Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.'
        )


def _expand_cron_token(token: str, min_value: int, max_value: int) -> Set[int]:
    values: Set[int] = set()
    for part in token.split(","):
        base, _, step_str = part.partition("/")
        step = int(step_str) if step_str else 1
        if base == "*":
            start, end = min_value, max_value
        elif "-" in base:
            left, right = base.split("-", 1)
            start, end = int(left), int(right)
        else:
            start = int(base)
            end = max_value if step_str else start
        values.update(range(start, end + 1, step))
    return values


def _ensure_satisfiable(expression: str, raw: str, field_path: str) -> str:
    second, minute, hour, day_of_month, month, day_of_week = expression.split()
    if day_of_month == "*":
        return expression
    days = _expand_cron_token(day_of_month, 1, 31)
    months = _expand_cron_token(month, 1, 12)
    if any(day <= MONTH_MAX_DAYS[month_num] for month_num in months for day in days):
        return expression
    if day_of_week == "*":
        raise InvalidSchedule(f'Error: Schedule "{raw}" can never fire at {field_path}.')
    # Day-of-month never occurs in these months; the weekday alone decides.
    return " ".join((second, minute, hour, "*", month, day_of_week))


def next_fire(schedule: Schedule, after: datetime, last_fire: Optional[datetime] = None) -> datetime:
    """Return the first fire instant strictly after ``after`` as an aware UTC datetime.

    Interval schedules advance from ``last_fire`` so late ticks do not drift;
    a candidate that is not in the future restarts the interval at ``after``.
    """
    after = _ensure_aware_utc(after)
    if schedule.kind == SCHEDULE_EVERY:
        assert schedule.interval is not None
        base = _ensure_aware_utc(last_fire) if last_fire is not None else after
        candidate = base + schedule.interval
        if candidate <= after:
            candidate = after + schedule.interval
        return candidate
    return _next_cron_after(schedule, after)


def _next_cron_after(schedule: Schedule, after: datetime) -> datetime:
    require_croniter_dependency()
    assert schedule.expression is not None
    second, minute, hour, day_of_month, month, day_of_week = schedule.expression.split()
    # croniter takes the seconds field last.
    cron_expr = f"{minute} {hour} {day_of_month} {month} {day_of_week} {second}"
    local_after = after.replace(microsecond=0).astimezone(schedule.timezone)
    try:
        iterator = croniter(cron_expr, local_after, day_or=True)
        for _ in range(10000):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=schedule.timezone)
            nxt = nxt.astimezone(UTC)
            if nxt > after:
                return nxt
    except (ValueError, KeyError) as exc:
        raise InvalidSchedule(f'Error: Cannot evaluate schedule "{schedule.text}": {exc}') from exc
    raise InvalidSchedule(f'Error: No fire time found for "{schedule.text}" after {after.isoformat()}.')


def next_fire_times(schedule: Schedule, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or utc_now())
    runs: List[datetime] = []
    last: Optional[datetime] = None
    while len(runs) < count:
        nxt = next_fire(schedule, cursor, last)
        runs.append(nxt)
        cursor = nxt
        last = nxt
    return runs


# Job model


@dataclass(frozen=True)
class JobDescriptor:
    kind: str
    name: str
    fields: Mapping[str, Tuple[str, ...]]
    origin: str = ""
    convention: str = CONVENTION_CFC

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass(frozen=True)
class ExecPayload:
    command: str
    container: str
    user: Optional[str] = None
    tty: bool = False
    environment: Tuple[str, ...] = ()
    workdir: Optional[str] = None


@dataclass(frozen=True)
class RunPayload:
    command: str
    image: Optional[str] = None
    container: Optional[str] = None
    user: Optional[str] = None
    network: Tuple[str, ...] = ()
    hostname: Optional[str] = None
    delete: bool = True
    tty: bool = False
    volume: Tuple[str, ...] = ()
    environment: Tuple[str, ...] = ()
    timeout: int = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class LocalPayload:
    command: str
    dir: Optional[str] = None
    environment: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceRunPayload:
    command: str
    image: str
    user: Optional[str] = None
    network: Tuple[str, ...] = ()
    delete: bool = True
    tty: bool = False
    environment: Tuple[str, ...] = ()
    timeout: int = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Job:
    kind: str
    name: str
    schedule: Schedule
    payload: Any
    allow_overlap: bool = False
    enabled: bool = True
    source_id: str = ""
    origin: str = ""

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def capability(self) -> str:
        if self.kind == KIND_LOCAL:
            return CAPABILITY_HOST
        return CAPABILITY_CONTAINER

    @property
    def target(self) -> str:
        payload = self.payload
        if self.kind == KIND_EXEC:
            return f"container {payload.container}"
        if self.kind == KIND_RUN:
            if payload.image:
                return f"new container from image {payload.image}"
            return f"existing container {payload.container}"
        if self.kind == KIND_SERVICE_RUN:
            return f"run-once service from image {payload.image}"
        return "host"


def _field_values(value: Any, field_path: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        out: List[str] = []
        for idx, item in enumerate(value):
            if isinstance(item, (list, tuple, dict)):
                raise ConfigError(f"Error: {field_path}[{idx}] is nested too deeply.")
            out.extend(_field_values(item, f"{field_path}[{idx}]"))
        return tuple(out)
    if isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} is nested too deeply.")
    if isinstance(value, bool):
        return ("true" if value else "false",)
    return (str(value),)


def make_descriptor(
    kind: str,
    name: str,
    fields: Mapping[str, Any],
    origin: str = "",
    convention: str = CONVENTION_CFC,
) -> JobDescriptor:
    normalized = {
        str(key): _field_values(value, f"{name}.{key}") for key, value in fields.items()
    }
    return JobDescriptor(
        kind=kind,
        name=name,
        fields=normalized,
        origin=origin,
        convention=convention,
    )


def ensure_bool(value: Optional[str], field_path: str, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in BOOL_TRUE:
        return True
    if lowered in BOOL_FALSE:
        return False
    raise ValidationError(f'Error: {field_path} must be true or false, got "{value}".')


def ensure_int(value: Optional[str], field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        raise ValidationError(f'Error: {field_path} must be an integer, got "{value}".') from exc
    if parsed < minimum:
        raise ValidationError(f"Error: {field_path} must be >= {minimum}.")
    return parsed


def _single(fields: Mapping[str, Tuple[str, ...]], key: str, field_path: str) -> Optional[str]:
    values = fields.get(key) or ()
    if not values:
        return None
    if len(values) > 1:
        logger.warning("%s.%s is set %s times; using the last value.", field_path, key, len(values))
    value = values[-1].strip()
    return value or None


def _require(fields: Mapping[str, Tuple[str, ...]], key: str, field_path: str) -> str:
    value = _single(fields, key, field_path)
    if value is None:
        raise ValidationError(f"Error: {field_path}.{key} is required.")
    return value


def _many(fields: Mapping[str, Tuple[str, ...]], key: str) -> Tuple[str, ...]:
    return tuple(value.strip() for value in fields.get(key, ()) if value.strip())


def _environment(fields: Mapping[str, Tuple[str, ...]], field_path: str) -> Tuple[str, ...]:
    entries = _many(fields, "environment")
    for entry in entries:
        if "=" not in entry or entry.startswith("="):
            raise ValidationError(
                f'Error: {field_path}.environment entry "{entry}" must be KEY=VALUE.'
            )
    return entries


def _validate_command(command: str, field_path: str) -> None:
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise ValidationError(f"Error: {field_path}.command cannot be parsed: {exc}.") from exc
    if not argv:
        raise ValidationError(f"Error: {field_path}.command is required.")


def build_job(descriptor: JobDescriptor, source_id: str = "", tz: Optional[ZoneInfo] = None) -> Job:
    kind = descriptor.kind
    field_path = descriptor.key
    if kind not in KIND_FIELDS:
        raise ValidationError(f'Error: Unknown job kind "{kind}" for {descriptor.name}.')
    if not descriptor.name.strip():
        raise ValidationError(f"Error: {kind} job has an empty name.")
    fields = descriptor.fields

    unused = sorted(set(fields) - KIND_FIELDS[kind] - COMMON_FIELDS)
    if unused:
        logger.warning(
            "Ignoring unknown field(s) %s for %s (%s).",
            ", ".join(unused),
            field_path,
            descriptor.origin or source_id,
        )

    schedule = parse_schedule(_require(fields, "schedule", field_path), tz, f"{field_path}.schedule")
    command = _require(fields, "command", field_path)
    _validate_command(command, field_path)
    allow_overlap = ensure_bool(
        _single(fields, "allow-overlap", field_path), f"{field_path}.allow-overlap", default=False
    )
    enabled = ensure_bool(_single(fields, "enabled", field_path), f"{field_path}.enabled", default=True)

    payload: Any
    if kind == KIND_EXEC:
        payload = ExecPayload(
            command=command,
            container=_require(fields, "container", field_path),
            user=_single(fields, "user", field_path),
            tty=ensure_bool(_single(fields, "tty", field_path), f"{field_path}.tty", default=False),
            environment=_environment(fields, field_path),
            workdir=_single(fields, "workdir", field_path),
        )
    elif kind == KIND_RUN:
        image = _single(fields, "image", field_path)
        container = _single(fields, "container", field_path)
        if image is None and container is None:
            raise ValidationError(f"Error: {field_path} requires image or container.")
        payload = RunPayload(
            command=command,
            image=image,
            container=container,
            user=_single(fields, "user", field_path),
            network=_many(fields, "network"),
            hostname=_single(fields, "hostname", field_path),
            delete=ensure_bool(_single(fields, "delete", field_path), f"{field_path}.delete", default=True),
            tty=ensure_bool(_single(fields, "tty", field_path), f"{field_path}.tty", default=False),
            volume=_many(fields, "volume"),
            environment=_environment(fields, field_path),
            timeout=ensure_int(
                _single(fields, "timeout", field_path), f"{field_path}.timeout", DEFAULT_TIMEOUT_SECONDS
            ),
        )
    elif kind == KIND_LOCAL:
        payload = LocalPayload(
            command=command,
            dir=_single(fields, "dir", field_path),
            environment=_environment(fields, field_path),
        )
    else:
        payload = ServiceRunPayload(
            command=command,
            image=_require(fields, "image", field_path),
            user=_single(fields, "user", field_path),
            network=_many(fields, "network"),
            delete=ensure_bool(_single(fields, "delete", field_path), f"{field_path}.delete", default=True),
            tty=ensure_bool(_single(fields, "tty", field_path), f"{field_path}.tty", default=False),
            environment=_environment(fields, field_path),
            timeout=ensure_int(
                _single(fields, "timeout", field_path), f"{field_path}.timeout", DEFAULT_TIMEOUT_SECONDS
            ),
        )

    return Job(
        kind=kind,
        name=descriptor.name,
        schedule=schedule,
        payload=payload,
        allow_overlap=allow_overlap,
        enabled=enabled,
        source_id=source_id,
        origin=descriptor.origin,
    )


# Merge engine


@dataclass(frozen=True)
class SourceState:
    priority: int
    revision: int
    descriptors: Tuple[JobDescriptor, ...]


@dataclass(frozen=True)
class MergeIssue:
    code: str
    source_id: str
    key: str
    message: str

    @classmethod
    def from_error(cls, source_id: str, key: str, exc: CfcError) -> "MergeIssue":
        if isinstance(exc, InvalidSchedule):
            code = "invalid_schedule"
        elif isinstance(exc, RegistryConflict):
            code = "conflict"
        else:
            code = "invalid"
        return cls(code=code, source_id=source_id, key=key, message=str(exc))


class Snapshot(Mapping):
    """Immutable job key -> Job view, iterated in key order."""

    def __init__(self, jobs: Optional[Mapping[str, Job]] = None):
        items = dict(sorted((jobs or {}).items()))
        self._jobs = MappingProxyType(items)

    def __getitem__(self, key: str) -> Job:
        return self._jobs[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def __repr__(self) -> str:
        return f"Snapshot({list(self._jobs)})"

    def enabled(self) -> List[Job]:
        return [job for job in self._jobs.values() if job.enabled]


def source_priority(source_id: str) -> int:
    return SOURCE_PRIORITY.get(source_id.split(":", 1)[0], 0)


def merge(
    sources: Mapping[str, SourceState],
    tz: Optional[ZoneInfo] = None,
) -> Tuple[Snapshot, List[MergeIssue]]:
    issues: List[MergeIssue] = []
    candidates: Dict[str, List[Tuple[int, int, str, Job]]] = {}

    for source_id in sorted(sources):
        state = sources[source_id]
        for descriptor in state.descriptors:
            try:
                job = build_job(descriptor, source_id=source_id, tz=tz)
            except ValidationError as exc:
                issues.append(MergeIssue.from_error(source_id, descriptor.key, exc))
                continue
            candidates.setdefault(job.key, []).append((state.priority, state.revision, source_id, job))

    jobs: Dict[str, Job] = {}
    for key in sorted(candidates):
        ranked = sorted(candidates[key], key=lambda item: (item[0], item[1], item[2]))
        winner = ranked[-1]
        tied = [item[2] for item in ranked if (item[0], item[1]) == (winner[0], winner[1])]
        if len(set(tied)) > 1:
            conflict = RegistryConflict(key, tied)
            issues.append(MergeIssue.from_error(winner[2], key, conflict))
        jobs[key] = winner[3]
    return Snapshot(jobs), issues


# Compatibility adapter


class CompatibilityAdapter:
    def __init__(self, enabled: bool = False):
        self.enabled = enabled

    def translate(self, descriptors: Tuple[JobDescriptor, ...]) -> Tuple[JobDescriptor, ...]:
        out: List[JobDescriptor] = []
        for descriptor in descriptors:
            if descriptor.convention == CONVENTION_CFC:
                out.append(descriptor)
                continue
            if not self.enabled:
                logger.warning(
                    "Dropping %s from %s: ofelia compatibility is disabled.",
                    descriptor.key,
                    descriptor.origin or "unknown origin",
                )
                continue
            out.append(self._rewrite(descriptor))
        return tuple(out)

    def _rewrite(self, descriptor: JobDescriptor) -> JobDescriptor:
        fields = dict(descriptor.fields)
        no_overlap = fields.pop("no-overlap", ())
        if "allow-overlap" not in fields:
            if not no_overlap:
                fields["allow-overlap"] = ("true",)
            else:
                raw = no_overlap[-1].strip().lower()
                if raw in BOOL_TRUE:
                    fields["allow-overlap"] = ("false",)
                elif raw in BOOL_FALSE:
                    fields["allow-overlap"] = ("true",)
                else:
                    # Left invalid so the job is rejected.
                    fields["allow-overlap"] = (no_overlap[-1],)
        return replace(descriptor, fields=fields, convention=CONVENTION_CFC)


# Registry


class Registry:
    """Source states plus the latest merged snapshot."""

    def __init__(self, adapter: Optional[CompatibilityAdapter] = None, tz: Optional[ZoneInfo] = None):
        self.adapter = adapter or CompatibilityAdapter()
        self.tz = tz
        self._lock = threading.Lock()
        self._sources: Dict[str, SourceState] = {}
        self._revisions = itertools.count(1)
        self._snapshot = Snapshot()
        self._issues: List[MergeIssue] = []
        self._subscribers: List[Callable[[Snapshot], None]] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def issues(self) -> List[MergeIssue]:
        return list(self._issues)

    def sources(self) -> Dict[str, SourceState]:
        with self._lock:
            return dict(self._sources)

    def subscribe(self, callback: Callable[[Snapshot], None]) -> None:
        self._subscribers.append(callback)

    def update_source(
        self,
        source_id: str,
        descriptors: Tuple[JobDescriptor, ...],
        priority: Optional[int] = None,
    ) -> Snapshot:
        with self._lock:
            translated = self.adapter.translate(tuple(descriptors))
            if priority is None:
                priority = source_priority(source_id)
            current = self._sources.get(source_id)
            if current is not None and current.priority == priority and current.descriptors == translated:
                logger.debug("Source %s unchanged.", source_id)
                return self._snapshot
            self._sources[source_id] = SourceState(
                priority=priority,
                revision=next(self._revisions),
                descriptors=translated,
            )
            logger.info("Source %s reported %s job(s).", source_id, len(translated))
            return self._publish()

    def remove_source(self, source_id: str) -> Optional[Snapshot]:
        with self._lock:
            if source_id not in self._sources:
                logger.debug("Source %s is not known; nothing to remove.", source_id)
                return None
            del self._sources[source_id]
            logger.info("Source %s removed.", source_id)
            return self._publish()

    def _publish(self) -> Snapshot:
        snapshot, issues = merge(self._sources, self.tz)
        for issue in issues:
            if issue not in self._issues:
                logger.warning("%s (source %s)", issue.message, issue.source_id)
        self._snapshot = snapshot
        self._issues = issues
        for callback in list(self._subscribers):
            callback(snapshot)
        return snapshot


# Run history


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    job_key: str
    kind: str
    scheduled_for: Optional[datetime]
    started_at: datetime
    ended_at: datetime
    outcome: str
    exit_code: Optional[int] = None
    reason: str = ""
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


class RunHistory:
    def __init__(self, size: int = DEFAULT_HISTORY_SIZE):
        if size < 1:
            raise ConfigError("Error: history size must be >= 1.")
        self.size = size
        self._lock = threading.Lock()
        self._records: Dict[str, deque[RunRecord]] = {}
        self._skips: Dict[str, int] = {}

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._records.setdefault(record.job_key, deque(maxlen=self.size)).append(record)

    def records(self, job_key: str) -> List[RunRecord]:
        with self._lock:
            return list(self._records.get(job_key, ()))

    def last(self, job_key: str) -> Optional[RunRecord]:
        with self._lock:
            records = self._records.get(job_key)
            return records[-1] if records else None

    def note_skip(self, job_key: str, scheduled_for: datetime) -> None:
        with self._lock:
            self._skips[job_key] = self._skips.get(job_key, 0) + 1

    def skips(self, job_key: str) -> int:
        with self._lock:
            return self._skips.get(job_key, 0)


# Runtime


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def _decode(data: Any) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        text = data.decode("utf-8", errors="replace")
    else:
        text = str(data)
    if len(text) > OUTPUT_CAPTURE_LIMIT:
        return text[-OUTPUT_CAPTURE_LIMIT:]
    return text


def _wait_or_sleep(cancel: Optional[threading.Event], seconds: float) -> None:
    if cancel is not None:
        cancel.wait(seconds)
    else:
        time.sleep(seconds)


class DockerRuntime:
    """Docker Engine and host process capabilities used by the dispatcher."""

    def __init__(
        self,
        socket_path: Optional[str] = None,
        client: Any = None,
        poll_seconds: float = POLL_SECONDS,
    ):
        self.socket_path = socket_path
        self.poll_seconds = poll_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            require_docker_dependency()
            try:
                if self.socket_path:
                    self._client = docker.DockerClient(base_url=f"unix://{self.socket_path}")
                else:
                    self._client = docker.from_env()
            except docker_errors.DockerException as exc:
                raise RuntimeUnreachable(f"Cannot connect to the container runtime: {exc}") from exc
        return self._client

    @contextmanager
    def _docker_call(self, target: str) -> Iterator[None]:
        try:
            yield
        except docker_errors.NotFound as exc:
            raise TargetUnavailable(f"{target} not found: {exc.explanation or exc}") from exc
        except docker_errors.APIError as exc:
            raise TargetUnavailable(f"{target}: {exc.explanation or exc}") from exc
        except docker_errors.DockerException as exc:
            raise RuntimeUnreachable(f"Container runtime error for {target}: {exc}") from exc
        except OSError as exc:
            raise RuntimeUnreachable(f"Container runtime unreachable for {target}: {exc}") from exc

    def list_containers(self, filters: Optional[Dict[str, List[str]]] = None) -> List[Any]:
        with self._docker_call("Container listing"):
            return self.client.containers.list(filters=filters or {})

    def events(self, since: Optional[int] = None) -> Any:
        with self._docker_call("Event stream"):
            return self.client.events(decode=True, filters={"type": "container"}, since=since)

    def exec_in_container(
        self,
        container: str,
        command: str,
        user: Optional[str] = None,
        tty: bool = False,
        environment: Tuple[str, ...] = (),
        workdir: Optional[str] = None,
    ) -> ExecResult:
        target = f'Container "{container}"'
        with self._docker_call(target):
            found = self.client.containers.get(container)
            if found.status != "running":
                raise TargetUnavailable(f"{target} is not running (status={found.status}).")
            result = found.exec_run(
                shlex.split(command),
                user=user or "",
                tty=tty,
                environment=list(environment) or None,
                workdir=workdir,
                demux=True,
            )
        output = result.output
        if isinstance(output, tuple):
            stdout, stderr = output
        else:
            stdout, stderr = output, None
        return ExecResult(exit_code=int(result.exit_code or 0), stdout=_decode(stdout), stderr=_decode(stderr))

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except docker_errors.ImageNotFound:
            logger.info("Pulling image %s", image)
            self.client.images.pull(image)

    def run_ephemeral_container(
        self,
        image: str,
        command: str,
        user: Optional[str] = None,
        network: Tuple[str, ...] = (),
        hostname: Optional[str] = None,
        delete: bool = True,
        tty: bool = False,
        volume: Tuple[str, ...] = (),
        environment: Tuple[str, ...] = (),
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        with self._docker_call(f'Image "{image}"'):
            self._ensure_image(image)
        networks = list(network)
        with self._docker_call(f'Container from image "{image}"'):
            container = self.client.containers.create(
                image,
                command=shlex.split(command),
                user=user or None,
                hostname=hostname,
                tty=tty,
                volumes=list(volume) or None,
                environment=list(environment) or None,
                network=networks[0] if networks else None,
                labels={MANAGED_LABEL: "true"},
            )
        discard = delete
        try:
            with self._docker_call(f'Container from image "{image}"'):
                for extra in networks[1:]:
                    self.client.networks.get(extra).connect(container)
                container.start()
            return self._wait_container(container, timeout, cancel)
        except (ExecutionFailure, Cancelled):
            # Timed-out or cancelled containers never outlive the run.
            discard = True
            raise
        finally:
            if discard:
                self._discard(container)

    def start_container(
        self,
        container: str,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        with self._docker_call(f'Container "{container}"'):
            found = self.client.containers.get(container)
            found.start()
        return self._wait_container(found, timeout, cancel)

    def remove_container(self, container: str) -> None:
        with self._docker_call(f'Container "{container}"'):
            self.client.containers.get(container).remove(force=True)

    def _wait_container(self, container: Any, timeout: int, cancel: Optional[threading.Event]) -> ExecResult:
        target = f'Container "{getattr(container, "name", None) or container.id}"'
        deadline = time.monotonic() + timeout
        while True:
            with self._docker_call(target):
                container.reload()
                status = container.status
            if status in {"exited", "dead"}:
                break
            if cancel is not None and cancel.is_set():
                self._kill(container)
                raise Cancelled(f"{target} killed on shutdown.")
            if time.monotonic() >= deadline:
                self._kill(container)
                raise ExecutionFailure(f"{target} timed out after {timeout} seconds.")
            _wait_or_sleep(cancel, self.poll_seconds)
        with self._docker_call(target):
            state = container.attrs.get("State") or {}
            stdout = container.logs(stdout=True, stderr=False)
            stderr = container.logs(stdout=False, stderr=True)
        return ExecResult(
            exit_code=int(state.get("ExitCode", -1)),
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )

    def _kill(self, container: Any) -> None:
        try:
            container.kill()
        except docker_errors.DockerException as exc:
            logger.debug("Kill of container %s failed: %s", container.id, exc)

    def _discard(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except docker_errors.DockerException as exc:
            logger.warning("Failed to remove container %s: %s", container.id, exc)

    def create_run_once_service(
        self,
        image: str,
        command: str,
        name: str,
        user: Optional[str] = None,
        network: Tuple[str, ...] = (),
        tty: bool = False,
        environment: Tuple[str, ...] = (),
    ) -> Any:
        require_docker_dependency()
        with self._docker_call(f'Service "{name}"'):
            return self.client.services.create(
                image,
                command=shlex.split(command),
                name=name,
                user=user or None,
                tty=tty,
                env=list(environment) or None,
                networks=list(network) or None,
                restart_policy=RestartPolicy(condition="none"),
                labels={MANAGED_LABEL: "true"},
            )

    def await_service_completion(
        self,
        service: Any,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        target = f'Service "{service.name}"'
        deadline = time.monotonic() + timeout
        while True:
            with self._docker_call(target):
                tasks = service.tasks()
            finished = [
                task for task in tasks if (task.get("Status") or {}).get("State") in SERVICE_TERMINAL_STATES
            ]
            if finished:
                status = finished[0]["Status"]
                break
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"{target} abandoned on shutdown.")
            if time.monotonic() >= deadline:
                raise ExecutionFailure(f"{target} timed out after {timeout} seconds.")
            _wait_or_sleep(cancel, self.poll_seconds)

        exit_code = (status.get("ContainerStatus") or {}).get("ExitCode")
        if exit_code is None:
            exit_code = 0 if status.get("State") == "complete" else 1
        try:
            output = b"".join(service.logs(stdout=True, stderr=True))
        except docker_errors.APIError as exc:
            logger.debug("Logs unavailable for %s: %s", target, exc)
            output = b""
        return ExecResult(exit_code=int(exit_code), stdout=_decode(output), stderr=status.get("Err", "") or "")

    def remove_service(self, service: Any) -> None:
        with self._docker_call(f'Service "{service.name}"'):
            service.remove()

    def spawn_host_process(
        self,
        command: str,
        cwd: Optional[str] = None,
        environment: Tuple[str, ...] = (),
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        env = os.environ.copy()
        env.update(dict(entry.split("=", 1) for entry in environment))
        try:
            process = subprocess.Popen(
                shlex.split(command),
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except (OSError, ValueError) as exc:
            raise TargetUnavailable(f'Cannot spawn "{command}": {exc}') from exc

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_seconds)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    process.kill()
                    process.communicate()
                    raise Cancelled(f'Process "{command}" killed on shutdown.')
                if deadline is not None and time.monotonic() >= deadline:
                    process.kill()
                    process.communicate()
                    raise ExecutionFailure(f'Process "{command}" timed out after {timeout} seconds.')
        return ExecResult(exit_code=process.returncode, stdout=_decode(stdout), stderr=_decode(stderr))


# Dispatcher


class Dispatcher:
    def __init__(self, runtime: Any):
        self.runtime = runtime
        self._sequence = itertools.count(1)

    def dispatch(
        self,
        job: Job,
        scheduled_for: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RunRecord:
        started = utc_now()
        run_id = f"{job.key}:{started.strftime('%Y%m%d%H%M%S')}-{next(self._sequence)}"
        if scheduled_for:
            logger.info(
                "[%s] Starting %s on %s (scheduled_for=%s)",
                run_id,
                job.key,
                job.target,
                scheduled_for.astimezone(job.schedule.timezone).isoformat(),
            )
        else:
            logger.info("[%s] Starting %s on %s", run_id, job.key, job.target)

        outcome = OUTCOME_SUCCESS
        exit_code: Optional[int] = None
        reason = ""
        stdout = ""
        stderr = ""
        try:
            result = self._execute(job, run_id, cancel)
        except Cancelled as exc:
            outcome, reason = OUTCOME_CANCELLED, str(exc)
        except ExecutionFailure as exc:
            outcome, reason = OUTCOME_EXECUTION_FAILURE, str(exc)
        except TargetUnavailable as exc:
            outcome, reason = OUTCOME_TARGET_UNAVAILABLE, str(exc)
        except RuntimeUnreachable as exc:
            outcome, reason = OUTCOME_RUNTIME_UNREACHABLE, str(exc)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("[%s] Unexpected error: %s", run_id, exc)
            outcome, reason = OUTCOME_EXECUTION_FAILURE, str(exc)
        else:
            exit_code = result.exit_code
            stdout = result.stdout
            stderr = result.stderr
            if exit_code != 0:
                outcome = OUTCOME_EXECUTION_FAILURE
                reason = f"Exited with code {exit_code}."

        record = RunRecord(
            run_id=run_id,
            job_key=job.key,
            kind=job.kind,
            scheduled_for=scheduled_for,
            started_at=started,
            ended_at=utc_now(),
            outcome=outcome,
            exit_code=exit_code,
            reason=reason,
            stdout=stdout,
            stderr=stderr,
        )
        if record.success:
            logger.info("[%s] Finished %s in %.2fs", run_id, job.key, record.duration_seconds)
        else:
            logger.warning(
                "[%s] %s finished with %s after %.2fs: %s",
                run_id,
                job.key,
                outcome,
                record.duration_seconds,
                reason,
            )
        if stderr.strip():
            logger.debug("[%s] stderr:\n%s", run_id, stderr.rstrip())
        return record

    def _execute(self, job: Job, run_id: str, cancel: Optional[threading.Event]) -> ExecResult:
        payload = job.payload
        if job.kind == KIND_EXEC:
            return self.runtime.exec_in_container(
                payload.container,
                payload.command,
                user=payload.user,
                tty=payload.tty,
                environment=payload.environment,
                workdir=payload.workdir,
            )
        if job.kind == KIND_RUN:
            if payload.image:
                return self.runtime.run_ephemeral_container(
                    payload.image,
                    payload.command,
                    user=payload.user,
                    network=payload.network,
                    hostname=payload.hostname,
                    delete=payload.delete,
                    tty=payload.tty,
                    volume=payload.volume,
                    environment=payload.environment,
                    timeout=payload.timeout,
                    cancel=cancel,
                )
            return self.runtime.start_container(payload.container, timeout=payload.timeout, cancel=cancel)
        if job.kind == KIND_LOCAL:
            return self.runtime.spawn_host_process(
                payload.command,
                cwd=payload.dir,
                environment=payload.environment,
                cancel=cancel,
            )
        if job.kind == KIND_SERVICE_RUN:
            return self._run_service(job, run_id, cancel)
        raise ValidationError(f"Error: Unsupported job kind: {job.kind}")

    def _run_service(self, job: Job, run_id: str, cancel: Optional[threading.Event]) -> ExecResult:
        payload = job.payload
        service = self.runtime.create_run_once_service(
            payload.image,
            payload.command,
            name=service_name(job, run_id),
            user=payload.user,
            network=payload.network,
            tty=payload.tty,
            environment=payload.environment,
        )
        remove = payload.delete
        try:
            return self.runtime.await_service_completion(service, timeout=payload.timeout, cancel=cancel)
        except (ExecutionFailure, Cancelled):
            # The task keeps running until its service is removed.
            remove = True
            raise
        finally:
            if remove:
                try:
                    self.runtime.remove_service(service)
                except CfcError as exc:
                    logger.warning("[%s] Failed to remove service: %s", run_id, exc)


def service_name(job: Job, run_id: str) -> str:
    suffix = run_id.rsplit(":", 1)[-1]
    slug = SERVICE_NAME_RE.sub("-", f"cfc-{job.name}-{suffix}").strip("-").lower()
    return slug[:63].rstrip("-")


# Concurrency guard


@dataclass
class Lease:
    job_key: str
    exclusive: bool
    released: bool = False


class ConcurrencyGuard:
    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ConfigError("Error: max concurrency must be >= 1.")
        self.max_concurrency = max_concurrency
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._job_locks: Dict[str, threading.Lock] = {}
        self._active: Dict[str, int] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, job_key: str, allow_overlap: bool) -> Tuple[str, Optional[Lease]]:
        with self._mutex:
            job_lock = self._job_locks.setdefault(job_key, threading.Lock())
            if not allow_overlap and (self._active.get(job_key, 0) > 0 or not job_lock.acquire(blocking=False)):
                return GUARD_SKIPPED, None
            if not self._slots.acquire(blocking=False):
                if not allow_overlap:
                    job_lock.release()
                return GUARD_NO_SLOT, None
            self._active[job_key] = self._active.get(job_key, 0) + 1
            return GUARD_ACQUIRED, Lease(job_key=job_key, exclusive=not allow_overlap)

    def release(self, lease: Lease) -> None:
        with self._mutex:
            if lease.released:
                return
            lease.released = True
            remaining = self._active.get(lease.job_key, 0) - 1
            if remaining > 0:
                self._active[lease.job_key] = remaining
            else:
                self._active.pop(lease.job_key, None)
            if lease.exclusive:
                self._job_locks[lease.job_key].release()
            if remaining <= 0:
                self._job_locks.pop(lease.job_key, None)
            self._slots.release()

    def active(self, job_key: str) -> int:
        with self._mutex:
            return self._active.get(job_key, 0)

    @property
    def total_active(self) -> int:
        with self._mutex:
            return sum(self._active.values())


# Scheduler loop


@dataclass
class TriggerEvent:
    job_key: str
    scheduled_for: datetime


@dataclass
class JobState:
    next_fire: Optional[datetime]
    last_fire: Optional[datetime] = None


@dataclass
class ActiveRun:
    ticket: int
    job: Job
    scheduled_for: datetime
    started_at: datetime
    lease: Lease
    cancel: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class Scheduler:
    """Single coordinating loop: fires due jobs and tracks their runs.

    ``tick(now)`` makes one cycle of decisions; ``run()`` repeats it, sleeping
    on a condition variable until the next fire, a snapshot swap, a run
    completion or a shutdown request.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        guard: Optional[ConcurrencyGuard] = None,
        history: Optional[RunHistory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
    ):
        self.dispatcher = dispatcher
        self.guard = guard or ConcurrencyGuard()
        self.history = history or RunHistory()
        self.clock = clock or utc_now
        self.shutdown_grace = shutdown_grace
        self.snapshot = Snapshot()
        self.states: Dict[str, JobState] = {}
        self.trigger_queue: deque[TriggerEvent] = deque()
        self.degraded: Set[str] = set()
        self._pending: Optional[Snapshot] = None
        self._condition = threading.Condition()
        self._active: Dict[int, ActiveRun] = {}
        self._tickets = itertools.count(1)
        self._stopping = False

    def swap_snapshot(self, snapshot: Snapshot) -> None:
        with self._condition:
            self._pending = snapshot
            self._condition.notify_all()

    def tick(self, now: Optional[datetime] = None) -> List[TriggerEvent]:
        now = _ensure_aware_utc(now or self.clock())
        with self._condition:
            if self._stopping:
                return []
            return self._cycle(now)

    def _cycle(self, now: datetime) -> List[TriggerEvent]:
        self._apply_pending_snapshot(now)
        self._collect_due(now)
        return self._drain_triggers(now)

    def _compute_next(self, job: Job, now: datetime, last_fire: Optional[datetime]) -> Optional[datetime]:
        try:
            return next_fire(job.schedule, now, last_fire)
        except CfcError as exc:
            logger.error("Cannot compute next fire for %s: %s", job.key, exc)
            return None

    def _apply_pending_snapshot(self, now: datetime) -> None:
        if self._pending is None:
            return
        snapshot, self._pending = self._pending, None
        previous = self.snapshot

        for key in previous:
            if key not in snapshot:
                self.states.pop(key, None)
                logger.info("Job %s removed from schedule.", key)

        for key, job in snapshot.items():
            old = previous.get(key)
            state = self.states.get(key)
            if state is None or old is None or old.schedule != job.schedule:
                self.states[key] = JobState(next_fire=self._compute_next(job, now, None))
                logger.info(
                    "Job %s scheduled (%s); next fire %s",
                    key,
                    job.schedule.description,
                    self.states[key].next_fire.isoformat() if self.states[key].next_fire else "none",
                )
            elif job.enabled and not old.enabled:
                state.next_fire = self._compute_next(job, now, None)
                logger.info("Job %s enabled.", key)
            elif old.enabled and not job.enabled:
                logger.info("Job %s disabled.", key)

        self.trigger_queue = deque(
            trigger
            for trigger in self.trigger_queue
            if trigger.job_key in snapshot and snapshot[trigger.job_key].enabled
        )
        self.snapshot = snapshot

    def _collect_due(self, now: datetime) -> None:
        due: List[TriggerEvent] = []
        for key, job in self.snapshot.items():
            if not job.enabled:
                continue
            state = self.states.get(key)
            if state is None or state.next_fire is None or state.next_fire > now:
                continue
            due.append(TriggerEvent(job_key=key, scheduled_for=state.next_fire))
            state.last_fire = state.next_fire
            state.next_fire = self._compute_next(job, now, state.last_fire)
        due.sort(key=lambda trigger: (trigger.scheduled_for, trigger.job_key))
        self.trigger_queue.extend(due)

    def _drain_triggers(self, now: datetime) -> List[TriggerEvent]:
        launched: List[TriggerEvent] = []
        while self.trigger_queue:
            trigger = self.trigger_queue[0]
            job = self.snapshot.get(trigger.job_key)
            if job is None or not job.enabled:
                self.trigger_queue.popleft()
                continue
            status, lease = self.guard.try_acquire(job.key, job.allow_overlap)
            if status == GUARD_SKIPPED:
                self.trigger_queue.popleft()
                self.history.note_skip(job.key, trigger.scheduled_for)
                logger.info(
                    "Skipping overlapping run for %s at %s",
                    job.key,
                    trigger.scheduled_for.isoformat(),
                )
                continue
            if status == GUARD_NO_SLOT:
                logger.debug("No free run slot; %s waits at the head of the queue.", job.key)
                break
            assert lease is not None
            self.trigger_queue.popleft()
            self._launch(job, trigger, lease, now)
            launched.append(trigger)
        return launched

    def _launch(self, job: Job, trigger: TriggerEvent, lease: Lease, now: datetime) -> None:
        run = ActiveRun(
            ticket=next(self._tickets),
            job=job,
            scheduled_for=trigger.scheduled_for,
            started_at=now,
            lease=lease,
        )
        self._active[run.ticket] = run
        logger.info(
            "Dispatching %s (overlap=%s, running=%s)",
            job.key,
            job.allow_overlap,
            self.guard.active(job.key),
        )
        thread = threading.Thread(target=self._worker, args=(run,), name=f"cfc-{job.key}", daemon=True)
        run.thread = thread
        thread.start()

    def _worker(self, run: ActiveRun) -> None:
        record = self.dispatcher.dispatch(run.job, scheduled_for=run.scheduled_for, cancel=run.cancel)
        self._settle(run, record)

    def _settle(self, run: ActiveRun, record: RunRecord) -> None:
        with self._condition:
            if self._active.pop(run.ticket, None) is None:
                # Already recorded as abandoned during shutdown.
                return
            self.guard.release(run.lease)
            self.history.add(record)
            capability = run.job.capability
            if record.outcome == OUTCOME_RUNTIME_UNREACHABLE:
                if capability not in self.degraded:
                    logger.error("Capability %s degraded: %s", capability, record.reason)
                self.degraded.add(capability)
            elif record.outcome != OUTCOME_CANCELLED and capability in self.degraded:
                self.degraded.discard(capability)
                logger.warning("Capability %s reachable again.", capability)
            self._condition.notify_all()

    def next_wakeup(self) -> Optional[datetime]:
        with self._condition:
            return self._next_wakeup()

    def _next_wakeup(self) -> Optional[datetime]:
        fires = [
            self.states[key].next_fire
            for key, job in self.snapshot.items()
            if job.enabled and key in self.states and self.states[key].next_fire is not None
        ]
        return min(fires) if fires else None

    def active_runs(self) -> int:
        with self._condition:
            return len(self._active)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: not self._active, timeout)

    def run(self) -> None:
        logger.info("Scheduler started.")
        with self._condition:
            while not self._stopping:
                self._cycle(_ensure_aware_utc(self.clock()))
                if self._pending is not None:
                    continue
                wake = self._next_wakeup()
                timeout = MAX_WAIT_SECONDS
                if wake is not None:
                    delta = (wake - _ensure_aware_utc(self.clock())).total_seconds()
                    timeout = min(max(delta, 0.0), MAX_WAIT_SECONDS)
                self._condition.wait(timeout)
        self.drain()
        logger.info("Scheduler stopped.")

    def request_shutdown(self) -> None:
        with self._condition:
            self._stopping = True
            self._condition.notify_all()

    def drain(self, grace: Optional[float] = None) -> None:
        grace = self.shutdown_grace if grace is None else grace
        with self._condition:
            self._stopping = True
            self.trigger_queue.clear()
            if self._active:
                logger.info("Waiting up to %.1fs for %s active run(s).", grace, len(self._active))
            self._wait_active(grace)
            if not self._active:
                return

            logger.warning("Cancelling %s run(s) still active after %.1fs.", len(self._active), grace)
            for run in self._active.values():
                run.cancel.set()
            self._wait_active(CANCEL_WAIT_SECONDS)

            for ticket, run in list(self._active.items()):
                del self._active[ticket]
                self.guard.release(run.lease)
                self.history.add(
                    RunRecord(
                        run_id=f"{run.job.key}:abandoned-{ticket}",
                        job_key=run.job.key,
                        kind=run.job.kind,
                        scheduled_for=run.scheduled_for,
                        started_at=run.started_at,
                        ended_at=utc_now(),
                        outcome=OUTCOME_CANCELLED,
                        reason="Abandoned at shutdown.",
                    )
                )
                logger.error("Run of %s abandoned at shutdown.", run.job.key)

    def _wait_active(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while self._active:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._condition.wait(remaining)


# Reconciler


@dataclass(frozen=True)
class ContainerEvent:
    action: str  # added | updated | removed
    container_id: str
    descriptors: Tuple[JobDescriptor, ...] = ()


class Reconciler:
    def __init__(self, registry: Registry, events: Optional[Queue] = None):
        self.registry = registry
        self.events: Queue = events if events is not None else Queue()
        self._thread: Optional[threading.Thread] = None

    def submit(self, event: ContainerEvent) -> None:
        self.events.put(event)

    def apply(self, event: ContainerEvent) -> None:
        source_id = f"{SOURCE_LABELS}:{event.container_id}"
        if event.action in {EVENT_ADDED, EVENT_UPDATED}:
            self.registry.update_source(source_id, event.descriptors)
        elif event.action == EVENT_REMOVED:
            self.registry.remove_source(source_id)
        else:
            logger.warning("Ignoring container event with unknown action %s.", event.action)

    def run(self) -> None:
        while True:
            event = self.events.get()
            if event is None:
                break
            try:
                self.apply(event)
            except CfcError as exc:
                logger.error("Failed to apply %s event for %s: %s", event.action, event.container_id, exc)
            except Exception as exc:
                logger.exception(
                    "Unexpected error applying %s event for %s: %s", event.action, event.container_id, exc
                )

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="cfc-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.events.put(None)
        if self._thread is not None:
            self._thread.join(timeout)


# Container labels


def _label_values(param: str, value: str) -> Tuple[str, ...]:
    if param in LIST_LABEL_PARAMS and value.strip().startswith("["):
        try:
            decoded = json.loads(value)
        except ValueError:
            return (value,)
        if isinstance(decoded, list) and all(isinstance(item, str) for item in decoded):
            return tuple(decoded)
    return (value,)


def extract_label_descriptors(
    container_id: str,
    labels: Mapping[str, str],
    prefixes: Tuple[str, ...],
    allow_unsafe: bool = False,
    container_name: Optional[str] = None,
) -> Tuple[JobDescriptor, ...]:
    display = container_name or container_id[:12]
    out: List[JobDescriptor] = []
    for prefix in prefixes:
        if str(labels.get(f"{prefix}.enabled", "")).strip().lower() != "true":
            continue
        convention = CONVENTION_OFELIA if prefix == OFELIA_LABEL_PREFIX else CONVENTION_CFC
        grouped: Dict[Tuple[str, str], Dict[str, Tuple[str, ...]]] = {}
        for label, value in sorted(labels.items()):
            if not label.startswith(f"{prefix}."):
                continue
            kind, _, rest = label[len(prefix) + 1 :].partition(".")
            name, _, param = rest.rpartition(".")
            if kind not in JOB_KINDS or not name or not param:
                continue
            grouped.setdefault((kind, name), {})[param] = _label_values(param, value)

        for (kind, name), fields in sorted(grouped.items()):
            if kind == KIND_LOCAL and not allow_unsafe:
                logger.warning(
                    "Ignoring %s.%s on container %s: local jobs from labels need --allow-unsafe-jobs.",
                    kind,
                    name,
                    display,
                )
                continue
            if kind in {KIND_EXEC, KIND_RUN} and "container" not in fields:
                fields["container"] = (container_name or container_id,)
            out.append(
                JobDescriptor(
                    kind=kind,
                    name=name,
                    fields=fields,
                    origin=f"container {display} ({prefix} labels)",
                    convention=convention,
                )
            )
    return tuple(out)


def parse_docker_filters(raw_filters: Tuple[str, ...]) -> Dict[str, List[str]]:
    filters: Dict[str, List[str]] = {}
    for raw in raw_filters:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f'Error: Docker filter "{raw}" must be key=value.')
        filters.setdefault(key.strip(), []).append(value.strip())
    return filters


class DockerLabelSource:
    """Feeds container label changes into the reconciler."""

    def __init__(
        self,
        runtime: DockerRuntime,
        reconciler: Reconciler,
        prefixes: Tuple[str, ...] = (DEFAULT_LABEL_PREFIX,),
        allow_unsafe: bool = False,
        filters: Tuple[str, ...] = (),
        retry_seconds: float = EVENT_RETRY_SECONDS,
    ):
        self.runtime = runtime
        self.reconciler = reconciler
        self.prefixes = tuple(prefixes)
        self.allow_unsafe = allow_unsafe
        self.filters = parse_docker_filters(tuple(filters))
        self.retry_seconds = retry_seconds
        self._known: Set[str] = set()
        self._stop = threading.Event()
        self._stream: Any = None
        self._thread: Optional[threading.Thread] = None

    def _descriptors(self, container_id: str, labels: Mapping[str, str], name: Optional[str]) -> Tuple[JobDescriptor, ...]:
        return extract_label_descriptors(container_id, labels or {}, self.prefixes, self.allow_unsafe, name)

    def scan(self) -> List[ContainerEvent]:
        events: List[ContainerEvent] = []
        seen: Set[str] = set()
        for container in self.runtime.list_containers(self.filters):
            descriptors = self._descriptors(container.id, container.labels, container.name)
            if not descriptors:
                continue
            seen.add(container.id)
            action = EVENT_UPDATED if container.id in self._known else EVENT_ADDED
            events.append(ContainerEvent(action=action, container_id=container.id, descriptors=descriptors))
        for gone in sorted(self._known - seen):
            events.append(ContainerEvent(action=EVENT_REMOVED, container_id=gone))
        self._known = seen
        return events

    def translate_event(self, raw: Mapping[str, Any]) -> Optional[ContainerEvent]:
        if raw.get("Type", "container") != "container":
            return None
        action = str(raw.get("Action") or raw.get("status") or "").split(":", 1)[0].strip()
        actor = raw.get("Actor") or {}
        container_id = actor.get("ID") or raw.get("id")
        if not container_id:
            return None

        if action in DOCKER_START_ACTIONS:
            if self.filters and not self.runtime.list_containers({**self.filters, "id": [container_id]}):
                return None
            attributes = actor.get("Attributes") or {}
            descriptors = self._descriptors(container_id, attributes, attributes.get("name"))
            if not descriptors:
                if container_id in self._known:
                    self._known.discard(container_id)
                    return ContainerEvent(action=EVENT_REMOVED, container_id=container_id)
                return None
            event_action = EVENT_UPDATED if container_id in self._known else EVENT_ADDED
            self._known.add(container_id)
            return ContainerEvent(action=event_action, container_id=container_id, descriptors=descriptors)

        if action in DOCKER_STOP_ACTIONS and container_id in self._known:
            self._known.discard(container_id)
            return ContainerEvent(action=EVENT_REMOVED, container_id=container_id)
        return None

    def run(self) -> None:
        while not self._stop.is_set():
            since = int(time.time())
            try:
                for event in self.scan():
                    self.reconciler.submit(event)
                self._stream = self.runtime.events(since=since)
                for raw in self._stream:
                    if self._stop.is_set():
                        break
                    event = self.translate_event(raw)
                    if event is not None:
                        self.reconciler.submit(event)
                if not self._stop.is_set():
                    logger.warning("Container event stream ended; reconnecting.")
            except (CfcError, OSError, docker_errors.DockerException) as exc:
                if self._stop.is_set():
                    break
                logger.warning(
                    "Container event stream failed: %s; retrying in %.0fs.", exc, self.retry_seconds
                )
            self._stop.wait(self.retry_seconds)

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="cfc-docker-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        stream = self._stream
        if stream is not None and hasattr(stream, "close"):
            try:
                stream.close()
            except (OSError, docker_errors.DockerException) as exc:
                logger.debug("Closing event stream failed: %s", exc)
        if self._thread is not None:
            self._thread.join(timeout)


# Config files


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def parse_ini(text: str, origin: str, convention: str = CONVENTION_CFC) -> Tuple[JobDescriptor, ...]:
    sections: Dict[Tuple[str, str], Dict[str, List[str]]] = {}
    current: Optional[Tuple[str, str]] = None
    in_global = False

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line[0] in ";#":
            continue
        if line.startswith("["):
            if not line.endswith("]"):
                raise ConfigError(f"Error: Malformed section header at {origin}:{lineno}.")
            header = line[1:-1].strip()
            if header == "global":
                current, in_global = None, True
                continue
            match = INI_SECTION_RE.match(header)
            if not match or match.group("kind") not in JOB_KINDS:
                raise ConfigError(f'Error: Unsupported section "[{header}]" at {origin}:{lineno}.')
            in_global = False
            current = (match.group("kind"), match.group("name"))
            if current in sections:
                logger.warning("Duplicate section [%s] at %s:%s; merging.", header, origin, lineno)
            else:
                sections[current] = {}
            continue

        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Error: Expected key = value at {origin}:{lineno}.")
        if current is None:
            if in_global:
                continue
            raise ConfigError(f"Error: Property outside of a section at {origin}:{lineno}.")
        sections[current].setdefault(key.strip(), []).append(_unquote(value.strip()))

    return tuple(
        JobDescriptor(
            kind=kind,
            name=name,
            fields={key: tuple(values) for key, values in fields.items()},
            origin=f'{origin} [{kind} "{name}"]',
            convention=convention,
        )
        for (kind, name), fields in sections.items()
    )


def parse_yaml(text: str, origin: str, convention: str = CONVENTION_CFC) -> Tuple[JobDescriptor, ...]:
    require_yaml_dependency()
    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {origin}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level config in {origin} must be a mapping of job names.")

    descriptors: List[JobDescriptor] = []
    for name, body in payload.items():
        name = str(name)
        if name == "global":
            continue
        if not isinstance(body, dict):
            raise ConfigError(f"Error: {name} in {origin} must be a mapping.")
        kind = body.get("kind")
        if kind not in JOB_KINDS:
            raise ConfigError(
                f'Error: {name}.kind in {origin} must be one of {", ".join(JOB_KINDS)}, got "{kind}".'
            )
        fields = {key: value for key, value in body.items() if key != "kind"}
        descriptors.append(make_descriptor(kind, name, fields, origin=f"{origin} {name}", convention=convention))
    return tuple(descriptors)


def load_file_content(
    text: str,
    origin: str,
    convention: str = CONVENTION_CFC,
    suffix: str = "",
) -> Tuple[JobDescriptor, ...]:
    if suffix == ".ini":
        return parse_ini(text, origin, convention)
    if suffix in {".yaml", ".yml"}:
        return parse_yaml(text, origin, convention)
    try:
        return parse_ini(text, origin, convention)
    except ConfigError as ini_error:
        try:
            return parse_yaml(text, origin, convention)
        except ConfigError as yaml_error:
            raise ConfigError(
                f"Error: {origin} is neither valid INI ({ini_error}) nor valid YAML ({yaml_error})."
            ) from yaml_error


def load_file(path: Path, convention: str = CONVENTION_CFC) -> Tuple[JobDescriptor, ...]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Error: Config file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Error: Cannot read config file {path}: {exc}") from exc
    return load_file_content(text, str(path), convention, suffix=path.suffix.lower())


# Command line


@dataclass(frozen=True)
class DaemonSettings:
    config_path: Path
    timezone: ZoneInfo
    ofelia: bool = False
    docker: bool = False
    docker_filters: Tuple[str, ...] = ()
    socket_path: Optional[str] = None
    prefixes: Tuple[str, ...] = (DEFAULT_LABEL_PREFIX,)
    allow_unsafe_jobs: bool = False
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    history_size: int = DEFAULT_HISTORY_SIZE

    @property
    def convention(self) -> str:
        return CONVENTION_OFELIA if self.ofelia else CONVENTION_CFC


def settings_from_args(args: argparse.Namespace) -> DaemonSettings:
    ofelia = bool(args.ofelia)
    config = args.config or (OFELIA_CONFIG if ofelia else DEFAULT_CONFIG)
    if args.timezone:
        zone = parse_timezone(args.timezone, "--timezone")
    else:
        zone = system_timezone()[0]

    prefixes = list(getattr(args, "prefix", None) or [DEFAULT_LABEL_PREFIX])
    if ofelia and OFELIA_LABEL_PREFIX not in prefixes:
        prefixes.append(OFELIA_LABEL_PREFIX)

    max_concurrency = getattr(args, "max_concurrency", DEFAULT_MAX_CONCURRENCY)
    if max_concurrency < 1:
        raise ConfigError("Error: --max-concurrency must be >= 1.")
    shutdown_grace = getattr(args, "shutdown_grace", DEFAULT_SHUTDOWN_GRACE_SECONDS)
    if shutdown_grace < 0:
        raise ConfigError("Error: --shutdown-grace must be >= 0.")
    history_size = getattr(args, "history_size", DEFAULT_HISTORY_SIZE)
    if history_size < 1:
        raise ConfigError("Error: --history-size must be >= 1.")

    return DaemonSettings(
        config_path=Path(config),
        timezone=zone,
        ofelia=ofelia,
        docker=bool(getattr(args, "docker", False)),
        docker_filters=tuple(getattr(args, "docker_filter", None) or ()),
        socket_path=getattr(args, "socket_path", None),
        prefixes=tuple(prefixes),
        allow_unsafe_jobs=bool(getattr(args, "allow_unsafe_jobs", False)) or ofelia,
        max_concurrency=max_concurrency,
        shutdown_grace=shutdown_grace,
        history_size=history_size,
    )


def is_docker_env() -> bool:
    return Path(DOCKER_ENV_MARKER).exists()


def build_registry(settings: DaemonSettings) -> Registry:
    return Registry(adapter=CompatibilityAdapter(enabled=settings.ofelia), tz=settings.timezone)


def load_file_source(registry: Registry, settings: DaemonSettings, required: bool = True) -> bool:
    path = settings.config_path
    if not path.exists() and not required:
        logger.info("No config file at %s; relying on container labels.", path)
        return False
    registry.update_source(SOURCE_FILE, load_file(path, settings.convention))
    return True


def select_jobs(snapshot: Snapshot, job_key: Optional[str], include_disabled: bool = False) -> List[Job]:
    selected = list(snapshot.values())
    if job_key:
        selected = [job for job in selected if job.key == job_key or job.name == job_key]
        if not selected:
            raise CfcError(f'Unknown job "{job_key}".')
    if include_disabled:
        return selected
    selected = [job for job in selected if job.enabled]
    if not selected:
        raise CfcError("No enabled jobs selected.")
    return selected


def command_validate(settings: DaemonSettings) -> int:
    registry = build_registry(settings)
    load_file_source(registry, settings, required=True)
    snapshot = registry.snapshot
    issues = registry.issues
    print(f"Config: {settings.config_path}")
    print(f"Total jobs: {len(snapshot)}")
    print(f"Enabled jobs: {len(snapshot.enabled())}")
    for key, job in snapshot.items():
        state = "" if job.enabled else " [disabled]"
        print(f"- {key}: {job.schedule.description} -> {job.target}{state}")
    for issue in issues:
        print(f"! {issue.key}: {issue.message}")
    if not snapshot:
        print("No valid job found.")
        return 1
    return 1 if issues else 0


def command_preview(settings: DaemonSettings, job_key: Optional[str], count: int) -> int:
    registry = build_registry(settings)
    load_file_source(registry, settings, required=True)
    selected = select_jobs(registry.snapshot, job_key, include_disabled=True)
    now_utc = utc_now()

    for job in selected:
        print("=" * 80)
        print(f"Job: {job.key} (enabled={job.enabled}, allow-overlap={job.allow_overlap})")
        print(f"Schedule: {job.schedule.text}")
        print(job.schedule.description)
        print(f"Target: {job.target}")
        print(f"Command: {job.payload.command}")
        print(f"Next {count} run(s):")
        for run_dt in next_fire_times(job.schedule, count, now_utc=now_utc):
            print(f"- {run_dt.astimezone(job.schedule.timezone).isoformat()}")
    print("=" * 80)
    return 0


def command_run(settings: DaemonSettings, job_key: Optional[str], runtime: Any = None) -> int:
    registry = build_registry(settings)
    load_file_source(registry, settings, required=True)
    selected = select_jobs(registry.snapshot, job_key, include_disabled=False)
    dispatcher = Dispatcher(runtime or DockerRuntime(socket_path=settings.socket_path))

    exit_code = 0
    for job in selected:
        record = dispatcher.dispatch(job)
        print(f"{job.key}: {record.outcome}" + (f" ({record.reason})" if record.reason else ""))
        if record.stdout:
            print(record.stdout.rstrip())
        if not record.success:
            exit_code = 1
    return exit_code


def command_daemon(settings: DaemonSettings, runtime: Any = None) -> int:
    registry = build_registry(settings)
    load_file_source(registry, settings, required=not settings.docker)
    if not settings.docker and not registry.snapshot:
        raise CfcError("No valid job found; nothing to schedule.")

    runtime = runtime or DockerRuntime(socket_path=settings.socket_path)
    scheduler = Scheduler(
        Dispatcher(runtime),
        guard=ConcurrencyGuard(settings.max_concurrency),
        history=RunHistory(settings.history_size),
        shutdown_grace=settings.shutdown_grace,
    )
    registry.subscribe(scheduler.swap_snapshot)
    scheduler.swap_snapshot(registry.snapshot)

    reconciler: Optional[Reconciler] = None
    label_source: Optional[DockerLabelSource] = None
    if settings.docker:
        if is_docker_env():
            time.sleep(1.0)
        reconciler = Reconciler(registry)
        reconciler.start()
        label_source = DockerLabelSource(
            runtime,
            reconciler,
            prefixes=settings.prefixes,
            allow_unsafe=settings.allow_unsafe_jobs,
            filters=settings.docker_filters,
        )
        label_source.start()

    def handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s; shutting down.", signum)
        scheduler.request_shutdown()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    logger.info(
        "Starting daemon with %s job(s) from %s, docker=%s, max_concurrency=%s",
        len(registry.snapshot),
        settings.config_path,
        settings.docker,
        settings.max_concurrency,
    )
    try:
        scheduler.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if label_source is not None:
            label_source.stop()
        if reconciler is not None:
            reconciler.stop()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cfc",
        description="cfc: cron scheduler for container jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        help=f"Path to the INI or YAML job file (default: {DEFAULT_CONFIG}, {OFELIA_CONFIG} with --ofelia)",
    )
    parser.add_argument(
        "--ofelia",
        action="store_true",
        help="Accept ofelia job definitions and labels",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity (-v, -vv)")
    parser.add_argument("--timezone", help="IANA timezone for cron schedules (default: host timezone)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler until SIGINT/SIGTERM")
    daemon_parser.add_argument("--docker", action="store_true", help="Read jobs from container labels")
    daemon_parser.add_argument(
        "--docker-filter",
        action="append",
        default=[],
        help="Container filter key=value for label discovery (repeatable)",
    )
    daemon_parser.add_argument("--socket-path", help="Docker Engine unix socket (default: from environment)")
    daemon_parser.add_argument(
        "--prefix",
        action="append",
        default=[],
        help=f"Label prefix to watch (repeatable, default: {DEFAULT_LABEL_PREFIX})",
    )
    daemon_parser.add_argument(
        "--allow-unsafe-jobs",
        action="store_true",
        help="Accept job-local definitions from container labels",
    )
    daemon_parser.add_argument(
        "--max-concurrency",
        type=int,
        default=DEFAULT_MAX_CONCURRENCY,
        help=f"Maximum concurrent runs (default: {DEFAULT_MAX_CONCURRENCY})",
    )
    daemon_parser.add_argument(
        "--shutdown-grace",
        type=float,
        default=DEFAULT_SHUTDOWN_GRACE_SECONDS,
        help=f"Seconds to let runs finish on shutdown (default: {DEFAULT_SHUTDOWN_GRACE_SECONDS:g})",
    )
    daemon_parser.add_argument(
        "--history-size",
        type=int,
        default=DEFAULT_HISTORY_SIZE,
        help=f"Run records kept per job (default: {DEFAULT_HISTORY_SIZE})",
    )

    subparsers.add_parser("validate", help="Validate the job file and list jobs")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("--job", help="Preview a single job by key or name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run jobs once, now")
    run_parser.add_argument("--job", help="Run one job by key or name")
    run_parser.add_argument("--socket-path", help="Docker Engine unix socket (default: from environment)")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        settings = settings_from_args(args)
        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise CfcError("--count must be >= 1")
            return command_preview(settings, job_key=args.job, count=args.count)
        if args.command == "run":
            return command_run(settings, job_key=args.job)
        if args.command == "daemon":
            return command_daemon(settings)
        raise CfcError(f"Unsupported command: {args.command}")
    except CfcError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
