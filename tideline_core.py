#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for the tideline recurring-task engine.

Holds configuration, diagnostics, deadline parsing, month arithmetic,
occurrence identity and the data model shared by the store, the generator,
the reconciliation controller and the combined task store.
"""
from __future__ import annotations
import os, re, sys
import json, time
import calendar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

from dateutil import tz

try:
    import tomllib  # Python 3.11+
except Exception:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except Exception:
        tomllib = None


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Config & defaults
# 2) Diagnostics
# 3) Errors
# 4) Deadline parsing & month arithmetic
# 5) Occurrence identity
# 6) Data model (Template, TemplatePatch, Occurrence, TaskView)
# ==============================================================================


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
_DEFAULTS = {
    "horizon_year": 2050,            # absolute last year any occurrence may fall in
    "open_ended_years": 50,          # window length when a template has no final date
    "max_occurrences": 5000,         # per template, after horizon clamping
    "db_path": "",                   # empty => $TIDELINE_DATA/occurrences.sqlite3
    "refresh_interval_secs": 60,
    "orphan_policy": "delete",       # delete | warn
    "panel_mode": "rich",            # rich | fast
    "fast_color": True,
}

_CONF_CACHE = None


def _read_toml(path: str) -> dict:
    try:
        if not path or not os.path.exists(path):
            return {}
    except Exception:
        return {}

    env_path = os.environ.get("TIDELINE_CONFIG") or ""
    env_abs = os.path.abspath(os.path.expanduser(env_path)) if env_path else ""
    is_env_path = bool(env_abs and path == env_abs)

    if tomllib is None:
        if is_env_path:
            raise RuntimeError(
                f"TIDELINE_CONFIG is set but TOML parser is unavailable for {path}. "
                "Install tomli or upgrade to Python 3.11+."
            )
        diag(f"TOML parser unavailable; ignoring {path}")
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except (OSError, ValueError) as e:
        if is_env_path:
            raise RuntimeError(f"TIDELINE_CONFIG parse failed for {path}: {e}")
        warn(f"Failed to parse TOML config {path}: {e}; using defaults.")
        return {}


def _config_paths() -> list[str]:
    env_path = os.environ.get("TIDELINE_CONFIG")
    if env_path:
        return [os.path.abspath(os.path.expanduser(env_path))]

    def _candidates_in_dir(d: str) -> list[str]:
        d = os.path.abspath(os.path.expanduser(d))
        return [
            os.path.join(d, "config-tideline.toml"),
            os.path.join(d, "tideline.toml"),
        ]

    paths: list[str] = []
    moddir = os.path.dirname(os.path.abspath(__file__))
    paths.extend(_candidates_in_dir(moddir))

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        paths.extend(_candidates_in_dir(os.path.join(xdg, "tideline")))
    paths.extend(_candidates_in_dir("~/.config/tideline"))

    seen = set()
    out = []
    for p in paths:
        if p in seen:
            continue
        seen.add(p)
        out.append(p)
    return out


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    return {str(k).strip().lower(): v for k, v in (d or {}).items()}


def _load_config() -> dict:
    cfg = dict(_DEFAULTS)
    chosen = None
    paths = _config_paths()
    for p in paths:
        data = _read_toml(p)
        if data:
            cfg.update(_normalize_keys(data))
            chosen = p
            break
    if chosen:
        diag(f"Using config: {chosen}")
    else:
        diag("No config file found; using defaults.")
    return cfg


def _get_config() -> dict:
    global _CONF_CACHE
    if _CONF_CACHE is None:
        _CONF_CACHE = _load_config()
    return _CONF_CACHE


def reload_config() -> dict:
    """Drop the cached config and read it again."""
    global _CONF_CACHE
    _CONF_CACHE = None
    return _get_config()


def _conf_raw(key: str):
    return _get_config().get(key)


def _conf_str(key: str, default: str) -> str:
    v = _conf_raw(key)
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)


def _conf_int(
    key: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    v = _conf_raw(key)
    try:
        out = int(str(v).strip())
    except (TypeError, ValueError):
        out = int(default)
    if min_value is not None and out < min_value:
        out = int(min_value)
    if max_value is not None and out > max_value:
        out = int(max_value)
    return out


def _conf_bool(key: str, default: bool = False) -> bool:
    v = _conf_raw(key)
    if v is None:
        return bool(default)
    return coerce_bool(v, default)


def data_dir() -> str:
    explicit = os.environ.get("TIDELINE_DATA")
    if explicit:
        return os.path.abspath(os.path.expanduser(explicit))
    base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return os.path.join(base, "tideline")


def default_db_path() -> str:
    configured = _conf_str("db_path", "")
    if configured:
        return os.path.abspath(os.path.expanduser(configured))
    return os.path.join(data_dir(), "occurrences.sqlite3")


def horizon_year() -> int:
    return _conf_int("horizon_year", _DEFAULTS["horizon_year"], min_value=1970, max_value=9998)


def open_ended_years() -> int:
    return _conf_int("open_ended_years", _DEFAULTS["open_ended_years"], min_value=1, max_value=500)


def max_occurrences() -> int:
    return _conf_int("max_occurrences", _DEFAULTS["max_occurrences"], min_value=1)


def refresh_interval_secs() -> int:
    return _conf_int("refresh_interval_secs", _DEFAULTS["refresh_interval_secs"], min_value=1)


def orphan_policy() -> str:
    policy = _conf_str("orphan_policy", _DEFAULTS["orphan_policy"]).lower()
    return policy if policy in ("delete", "warn") else "delete"


def panel_mode() -> str:
    mode = _conf_str("panel_mode", _DEFAULTS["panel_mode"]).lower()
    return "fast" if mode in ("fast", "plain") else "rich"


def fast_color() -> bool:
    return _conf_bool("fast_color", True)


# ==============================================================================
# SECTION: Diagnostics
# ==============================================================================
_DIAG_LOG_REDACT_KEYS = frozenset({"title", "notes", "link"})


def _redact_dict(data: Mapping, redact_keys: frozenset) -> dict:
    out = {}
    for k, v in (data or {}).items():
        if k in redact_keys:
            out[k] = "[redacted]"
        elif isinstance(v, Mapping):
            out[k] = _redact_dict(v, redact_keys)
        else:
            out[k] = v
    return out


def _diag_log_path(base: str | None = None) -> str:
    return os.path.join(base or data_dir(), ".tideline_diag.jsonl")


def diag_log(msg: str, component: str, data: Mapping | None = None, base: str | None = None) -> None:
    """Append a JSONL diagnostic record (when TIDELINE_DIAG_LOG=1)."""
    if os.environ.get("TIDELINE_DIAG_LOG") != "1":
        return
    path = _diag_log_path(base)
    try:
        max_bytes = int(os.environ.get("TIDELINE_DIAG_LOG_MAX_BYTES") or 262144)
    except ValueError:
        max_bytes = 262144
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if max_bytes > 0 and os.path.exists(path) and os.stat(path).st_size > max_bytes:
            os.replace(path, path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl"))
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "component": component,
            "pid": os.getpid(),
            "msg": str(msg),
        }
        if data:
            payload["data"] = _redact_dict(data, _DIAG_LOG_REDACT_KEYS)
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n")
    except OSError:
        # diagnostics must never break the engine
        pass


def diag(msg, component: str = "tideline", data: Mapping | None = None) -> None:
    """Write diagnostics to stderr when TIDELINE_DIAG=1 and to the diag log when TIDELINE_DIAG_LOG=1."""
    if os.environ.get("TIDELINE_DIAG") == "1":
        try:
            sys.stderr.write(f"[tideline] {msg}\n")
        except Exception:
            pass
    diag_log(msg, component, data)


def warn(msg, component: str = "tideline", data: Mapping | None = None) -> None:
    """Always-visible warning on stderr, mirrored into the diag log."""
    try:
        sys.stderr.write(f"[tideline] {msg}\n")
    except Exception:
        pass
    diag_log(msg, component, data)


# ==============================================================================
# SECTION: Errors
# ==============================================================================
class TidelineError(Exception):
    """Base class for engine errors."""


class ScheduleError(TidelineError, ValueError):
    """A template's schedule (start date, interval) cannot be expanded."""


class OccurrenceIdentityError(TidelineError, ValueError):
    """An occurrence id cannot be derived for this template/date."""


class StoreError(TidelineError):
    """Occurrence store read/write failure."""


class TaskNotFoundError(TidelineError, LookupError):
    """An update targets an id that is neither a template nor an occurrence."""


class InvalidFieldError(TidelineError, ValueError):
    """A field is unknown, not writable on the target, or has a bad value."""


# ==============================================================================
# SECTION: Deadline parsing & month arithmetic
# ==============================================================================
MIDDAY_HOUR = 12
DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_INT_FLOATISH_RE = re.compile(r"^[+-]?\d+\.0*$")
_LOCAL_TZ = tz.tzlocal()


def now_utc() -> datetime:
    """Current UTC time without microseconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def fmt_isoz(dt_utc: datetime) -> str:
    if dt_utc.tzinfo is None:
        dt_utc = dt_utc.replace(tzinfo=timezone.utc)
    return dt_utc.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def now_iso() -> str:
    return fmt_isoz(now_utc())


def local_today() -> date:
    return datetime.now(_LOCAL_TZ).date()


def anchor_midday(d: date) -> datetime:
    """Pin a calendar date to local noon so serialization never shifts the day."""
    return datetime(d.year, d.month, d.day, MIDDAY_HOUR, 0, 0, tzinfo=_LOCAL_TZ)


def parse_deadline(value) -> datetime | None:
    """
    Parse a deadline into a local mid-day datetime.

    Accepts ``yyyy-mm-dd`` with an optional time suffix (discarded), the
    locale fallbacks in DATE_FORMATS, and date/datetime objects. Returns None
    for empty or unparseable input; callers treat None as "no deadline".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return anchor_midday(value.date())
    if isinstance(value, date):
        return anchor_midday(value)
    s = str(value).strip()
    if not s:
        return None
    m = _ISO_DATE_RE.match(s)
    if m:
        try:
            return anchor_midday(date(int(m.group(1)), int(m.group(2)), int(m.group(3))))
        except ValueError:
            return None
    for fmt in DATE_FORMATS:
        try:
            return anchor_midday(datetime.strptime(s, fmt).date())
        except ValueError:
            pass
    return None


def parse_deadline_date(value) -> date | None:
    dt = parse_deadline(value)
    return dt.date() if dt else None


def month_len(y: int, m: int) -> int:
    return calendar.monthrange(y, m)[1]


def add_months(d: date, months: int) -> date:
    """Add months to date, clamping to the last day when the target month is shorter."""
    y = d.year + (d.month - 1 + months) // 12
    m = (d.month - 1 + months) % 12 + 1
    return date(y, m, min(d.day, month_len(y, m)))


def coerce_int(v, default=None):
    """Safely convert value to int, handling floats and numeric strings."""
    if v is None or isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if v.is_integer() else default
    s = str(v).strip()
    try:
        if _INT_FLOATISH_RE.fullmatch(s):
            return int(float(s))
        return int(s)
    except ValueError:
        return default


def coerce_bool(v, default: bool = False) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off", "none", ""):
        return False
    return default


# ==============================================================================
# SECTION: Occurrence identity
# ==============================================================================
OCCURRENCE_ID_SEP = "|"
CLONE_SUFFIX = "_clone"


def check_template_id(template_id) -> str:
    tid = "" if template_id is None else str(template_id)
    if not tid.strip():
        raise OccurrenceIdentityError("template id is empty")
    if OCCURRENCE_ID_SEP in tid:
        raise OccurrenceIdentityError(f"template id {tid!r} contains reserved separator {OCCURRENCE_ID_SEP!r}")
    if tid.endswith(CLONE_SUFFIX):
        raise OccurrenceIdentityError(f"template id {tid!r} ends with reserved suffix {CLONE_SUFFIX!r}")
    return tid


def occurrence_id(template_id, when) -> str:
    """Stable id for the occurrence of ``template_id`` on ``when`` (any parseable date form)."""
    tid = check_template_id(template_id)
    d = parse_deadline_date(when)
    if d is None:
        raise OccurrenceIdentityError(f"occurrence date {when!r} for template {tid} is not a date")
    return f"{tid}{OCCURRENCE_ID_SEP}{d.isoformat()}"


def clone_id(template_id) -> str:
    return f"{check_template_id(template_id)}{CLONE_SUFFIX}"


# ==============================================================================
# SECTION: Data model
# ==============================================================================
PRIORITIES = ("Normal", "Urgent")

TEMPLATE_FIELDS = (
    "title", "project", "deadline", "responsible", "recurring", "interval",
    "final_date", "priority", "notes", "link", "completed",
)
# Fields whose change can alter the occurrence set itself.
SCHEDULE_FIELDS = frozenset({"recurring", "interval", "final_date", "deadline"})
# Fields compared by reconciliation; completion and priority belong to occurrences.
CHANGE_FIELDS = (
    "title", "project", "recurring", "interval", "final_date", "deadline",
    "notes", "link", "responsible",
)
# Never copied from a template into an existing occurrence snapshot.
STATUS_FIELDS = frozenset({"completed"})
# Writable as per-occurrence deviations.
OVERRIDABLE_FIELDS = frozenset({"title", "project", "responsible", "priority", "notes", "link", "completed"})


def normalize_responsible(value) -> tuple[str, ...]:
    """Ordered, de-duplicated assignee ids."""
    if value is None:
        return ()
    items = [value] if isinstance(value, str) else list(value)
    out: list[str] = []
    for item in items:
        s = str(item).strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


def _date_text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()
    return s or None


def normalize_field(name: str, value):
    """Coerce a raw field value into its model type; raises InvalidFieldError."""
    if name not in TEMPLATE_FIELDS:
        raise InvalidFieldError(f"unknown field {name!r}")
    if name in ("recurring", "completed"):
        return coerce_bool(value)
    if name == "interval":
        return coerce_int(value)
    if name in ("deadline", "final_date"):
        return _date_text(value)
    if name == "responsible":
        return normalize_responsible(value)
    if name == "priority":
        s = str(value or "").strip()
        for p in PRIORITIES:
            if s.lower() == p.lower():
                return p
        raise InvalidFieldError(f"priority must be one of {', '.join(PRIORITIES)}, got {value!r}")
    return "" if value is None else str(value)


@dataclass(frozen=True)
class Template:
    """User-authored task definition as seen by the engine (read-only)."""

    id: str
    title: str = ""
    project: str = ""
    deadline: str | None = None
    responsible: tuple[str, ...] = ()
    recurring: bool = False
    interval: int | None = None
    final_date: str | None = None
    priority: str = "Normal"
    notes: str = ""
    link: str = ""
    completed: bool = False

    @classmethod
    def from_fields(cls, template_id, fields: Mapping[str, Any]) -> "Template":
        kwargs = {}
        for name in TEMPLATE_FIELDS:
            if name not in fields:
                continue
            try:
                kwargs[name] = normalize_field(name, fields[name])
            except InvalidFieldError as e:
                diag(f"template {template_id}: dropping {name}: {e}")
        return cls(id=str(template_id), **kwargs)

    def to_fields(self) -> dict:
        out = {name: getattr(self, name) for name in TEMPLATE_FIELDS}
        out["responsible"] = list(self.responsible)
        return out

    def signature(self, names: Iterable[str] = CHANGE_FIELDS) -> tuple:
        return tuple(getattr(self, n) for n in names)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class TemplatePatch:
    """
    Partial template update. A field left at UNSET is absent; any other value,
    None included, is applied. This keeps "not touched" distinct from "cleared".
    """

    title: Any = UNSET
    project: Any = UNSET
    deadline: Any = UNSET
    responsible: Any = UNSET
    recurring: Any = UNSET
    interval: Any = UNSET
    final_date: Any = UNSET
    priority: Any = UNSET
    notes: Any = UNSET
    link: Any = UNSET
    completed: Any = UNSET

    @classmethod
    def of(cls, **changes) -> "TemplatePatch":
        return cls(**{name: normalize_field(name, value) for name, value in changes.items()})

    def present(self) -> dict:
        return {n: getattr(self, n) for n in TEMPLATE_FIELDS if getattr(self, n) is not UNSET}

    def field_names(self) -> frozenset:
        return frozenset(self.present())

    def apply(self, template: Template) -> Template:
        return replace(template, **self.present())

    def __bool__(self) -> bool:
        return bool(self.present())


@dataclass
class Occurrence:
    """One dated materialization of a template."""

    id: str
    template_id: str
    occurrence_date: str
    sequence_number: int
    base_fields: dict = field(default_factory=dict)
    overrides: dict = field(default_factory=dict)
    completion_status: bool = False
    is_clone: bool = False
    created_at: str = ""
    last_modified: str = ""

    def effective(self, name: str, default=None):
        v = self.overrides.get(name)
        if v is not None:
            return v
        return self.base_fields.get(name, default)

    def effective_fields(self) -> dict:
        out = dict(self.base_fields)
        for k, v in self.overrides.items():
            if v is not None:
                out[k] = v
        return out

    def derived_completion(self) -> bool:
        return coerce_bool(self.effective("completed", False))

    def same_content(self, other: "Occurrence | None") -> bool:
        """Equal apart from timestamps."""
        if other is None:
            return False
        return (
            self.id == other.id
            and self.template_id == other.template_id
            and self.occurrence_date == other.occurrence_date
            and self.sequence_number == other.sequence_number
            and self.base_fields == other.base_fields
            and self.overrides == other.overrides
            and bool(self.completion_status) == bool(other.completion_status)
            and bool(self.is_clone) == bool(other.is_clone)
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "templateId": self.template_id,
            "occurrenceDate": self.occurrence_date,
            "sequenceNumber": self.sequence_number,
            "baseFields": dict(self.base_fields),
            "overrides": dict(self.overrides),
            "completionStatus": bool(self.completion_status),
            "isClone": bool(self.is_clone),
            "createdAt": self.created_at,
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_record(cls, rec: Mapping[str, Any]) -> "Occurrence":
        return cls(
            id=str(rec["id"]),
            template_id=str(rec["templateId"]),
            occurrence_date=str(rec["occurrenceDate"]),
            sequence_number=int(rec.get("sequenceNumber") or 0),
            base_fields=dict(rec.get("baseFields") or {}),
            overrides=dict(rec.get("overrides") or {}),
            completion_status=bool(rec.get("completionStatus")),
            is_clone=bool(rec.get("isClone")),
            created_at=str(rec.get("createdAt") or ""),
            last_modified=str(rec.get("lastModified") or ""),
        )


def display_status(completed: bool, when: str | None, today: date | None = None) -> str:
    if completed:
        return "Completed"
    d = parse_deadline_date(when)
    if d is not None and d < (today or local_today()):
        return "Overdue"
    return "Active"


@dataclass(frozen=True)
class TaskView:
    """Flattened entry of the combined task list. Never persisted."""

    id: str
    original_template_id: str
    is_recurring_instance: bool
    is_clone: bool
    occurrence_date: str | None
    sequence_number: int | None
    fields: Mapping[str, Any]
    overridden: frozenset = frozenset()
    status: str = "Active"

    def get(self, name: str, default=None):
        return self.fields.get(name, default)

    @property
    def title(self) -> str:
        return str(self.fields.get("title") or "")

    @property
    def priority(self) -> str:
        return str(self.fields.get("priority") or "Normal")

    @property
    def completed(self) -> bool:
        return coerce_bool(self.fields.get("completed"), False)

    @property
    def responsible(self) -> tuple[str, ...]:
        return normalize_responsible(self.fields.get("responsible"))

    @classmethod
    def from_occurrence(cls, occ: Occurrence, today: date | None = None) -> "TaskView":
        merged = occ.effective_fields()
        merged["completed"] = bool(occ.completion_status)
        return cls(
            id=occ.id,
            original_template_id=occ.template_id,
            is_recurring_instance=not occ.is_clone,
            is_clone=occ.is_clone,
            occurrence_date=occ.occurrence_date,
            sequence_number=occ.sequence_number,
            fields=merged,
            overridden=frozenset(k for k, v in occ.overrides.items() if v is not None),
            status=display_status(bool(occ.completion_status), occ.occurrence_date, today),
        )

    @classmethod
    def from_template(cls, tpl: Template, today: date | None = None) -> "TaskView":
        d = parse_deadline_date(tpl.deadline)
        return cls(
            id=tpl.id,
            original_template_id=tpl.id,
            is_recurring_instance=False,
            is_clone=False,
            occurrence_date=d.isoformat() if d else None,
            sequence_number=None,
            fields=tpl.to_fields(),
            status=display_status(tpl.completed, tpl.deadline, today),
        )
