"""calendarfeed.config_loader

Config loader for calendarfeed.

- YAML (PyYAML ``safe_load``) for ``.yaml``/``.yml`` files, JSON for ``.json`` files.
- Exposes a typed dataclass ``FeedConfig`` and a ``load_config()`` helper that accepts
  an optional path override.
- Environment variables override file values, see ``apply_env_overrides``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import yaml
from pydantic import ValidationError

from .feed_models import AuthMethod, FeedAuth, FeedSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "config.yaml"

# Numeric keys a calendar entry may override
CALENDAR_OVERRIDE_KEYS = ("maximum_entries", "maximum_number_of_days", "reload_interval")

# Boolean keys a calendar entry may override
CALENDAR_FLAG_KEYS = ("include_past_events", "self_signed_cert")

TRUE_STRINGS = ("1", "true", "yes", "on")
FALSE_STRINGS = ("0", "false", "no", "off", "")

_T = TypeVar("_T", int, float)


@dataclass
class FeedConfig:
    """Typed configuration for calendarfeed.

    Fields:
        calendars: raw calendar entries (dicts with at least ``url``)
        maximum_entries: events per page and in the merged list
        maximum_number_of_days: days ahead admitted by the fetch window
        reload_interval: seconds between fetches of a source
        request_timeout: HTTP request timeout in seconds
        excluded_events: title phrases dropped from single events
        include_past_events: also admit events from the past window
        hide_private: drop PRIVATE events from the merged list
        broadcast_events: push the full event list after every update
        timezone: IANA timezone name for "today" and floating times
        log_level: logging level name
    """

    calendars: list[dict[str, Any]] = field(default_factory=list)
    maximum_entries: int = 10
    maximum_number_of_days: int = 365
    reload_interval: float = 300.0
    request_timeout: float = 10.0
    excluded_events: list[str] = field(default_factory=list)
    include_past_events: bool = False
    hide_private: bool = False
    broadcast_events: bool = True
    timezone: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> FeedConfig:
        """Create a FeedConfig from a plain mapping, applying defaults and validation.

        Numeric values are coerced; values that are not numbers or not positive are
        replaced by their default with a warning. Calendar entries without a ``url``
        are dropped.
        """
        if data is None:
            data = {}
        defaults = cls()

        calendars_raw = data.get("calendars") or []
        if not isinstance(calendars_raw, (list, tuple)):
            logger.warning("Config `calendars` is not a list; ignoring it")
            calendars_raw = []

        calendars: list[dict[str, Any]] = []
        for index, entry in enumerate(calendars_raw):
            if isinstance(entry, str):
                entry = {"url": entry}
            if not isinstance(entry, Mapping) or not entry.get("url"):
                logger.warning("Calendar entry #%d has no url; skipping", index)
                continue
            calendars.append(dict(entry))

        timezone = data.get("timezone")
        log_level = data.get("log_level", defaults.log_level)

        return cls(
            calendars=calendars,
            maximum_entries=_coerce_positive(
                data, "maximum_entries", defaults.maximum_entries, int
            ),
            maximum_number_of_days=_coerce_positive(
                data, "maximum_number_of_days", defaults.maximum_number_of_days, int
            ),
            reload_interval=_coerce_positive(
                data, "reload_interval", defaults.reload_interval, float
            ),
            request_timeout=_coerce_positive(
                data, "request_timeout", defaults.request_timeout, float
            ),
            excluded_events=_string_list(data.get("excluded_events")),
            include_past_events=_coerce_bool(data, "include_past_events", False),
            hide_private=_coerce_bool(data, "hide_private", False),
            broadcast_events=_coerce_bool(data, "broadcast_events", True),
            timezone=str(timezone) if timezone else None,
            log_level=str(log_level).upper() if log_level is not None else defaults.log_level,
        )

    def to_sources(self) -> list[FeedSource]:
        """Merge each calendar entry with the top-level defaults.

        Entries that fail validation are logged and skipped.
        """
        sources = []
        for entry in self.calendars:
            try:
                sources.append(self._to_source(entry))
            except (ValidationError, ValueError) as e:
                logger.warning("Invalid calendar entry for %s: %s", entry.get("url"), e)
        return sources

    def _to_source(self, entry: Mapping[str, Any]) -> FeedSource:
        values: dict[str, Any] = {
            "url": str(entry["url"]),
            "symbol": entry.get("symbol"),
            "self_signed_cert": False,
            "maximum_entries": self.maximum_entries,
            "maximum_number_of_days": self.maximum_number_of_days,
            "reload_interval": self.reload_interval,
            "request_timeout": self.request_timeout,
            "excluded_events": list(self.excluded_events),
            "include_past_events": self.include_past_events,
        }
        for key in CALENDAR_OVERRIDE_KEYS:
            if entry.get(key) is not None:
                values[key] = entry[key]
        for key in CALENDAR_FLAG_KEYS:
            values[key] = _coerce_bool(entry, key, values[key])
        if "excluded_events" in entry:
            values["excluded_events"] = _string_list(entry.get("excluded_events"))

        auth = entry.get("auth")
        if isinstance(auth, Mapping):
            values["auth"] = FeedAuth.model_validate(dict(auth))
        elif entry.get("user") or entry.get("pass"):
            values["auth"] = FeedAuth(
                method=AuthMethod.BASIC, user=entry.get("user"), password=entry.get("pass")
            )

        return FeedSource(**values)


def _coerce_positive(
    data: Mapping[str, Any], key: str, default: _T, cast: Callable[[Any], _T]
) -> _T:
    raw = data.get(key, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logger.warning("Config %s=%r is not a number; using default %s", key, raw, default)
        return default
    if value <= 0:
        logger.warning("Config %s=%r must be positive; using default %s", key, raw, default)
        return default
    return value


def _coerce_bool(data: Mapping[str, Any], key: str, default: bool) -> bool:
    raw = data.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    text = str(raw).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    logger.warning("Config %s=%r is not a boolean; using default %s", key, raw, default)
    return default


def _string_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(item) for item in raw]


def apply_env_overrides(data: Mapping[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to a raw config mapping.

    Recognizes:
    - CALENDARFEED_ICS_URL -> 'calendars' (single calendar with that URL)
    - CALENDARFEED_RELOAD_INTERVAL -> 'reload_interval' (seconds)
    - CALENDARFEED_LOG_LEVEL -> 'log_level'
    - CALENDARFEED_TIMEZONE -> 'timezone'

    Returns:
        New mapping with the overrides applied
    """
    cfg = dict(data)

    ics_url = os.environ.get("CALENDARFEED_ICS_URL")
    if ics_url:
        cfg["calendars"] = [{"url": ics_url}]

    reload_interval = os.environ.get("CALENDARFEED_RELOAD_INTERVAL")
    if reload_interval:
        try:
            cfg["reload_interval"] = float(reload_interval)
        except ValueError:
            logger.warning("Invalid CALENDARFEED_RELOAD_INTERVAL=%r; ignoring", reload_interval)

    log_level = os.environ.get("CALENDARFEED_LOG_LEVEL")
    if log_level:
        cfg["log_level"] = log_level

    timezone = os.environ.get("CALENDARFEED_TIMEZONE")
    if timezone:
        cfg["timezone"] = timezone

    return cfg


def _load_yaml_or_json(path: Path) -> Any:
    """Load a YAML or JSON document, chosen by file extension."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: Optional[str] = None, use_env: bool = True) -> FeedConfig:
    """Load configuration from a YAML/JSON file and return a FeedConfig instance.

    Args:
        path: Optional path to the config file, defaults to ./config/config.yaml
        use_env: Apply CALENDARFEED_* environment overrides

    Returns:
        FeedConfig with values from file (or defaults).

    Behavior:
    - If file is missing: returns defaults (plus environment overrides).
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    p = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_PATH
    logger.debug("Attempting to load config from %s", p)

    raw: Any = {}
    if p.exists():
        raw = _load_yaml_or_json(p)
        if not isinstance(raw, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    if use_env:
        raw = apply_env_overrides(raw)
    cfg = FeedConfig.from_dict(raw)
    logger.debug("Configuration values: %s", cfg)
    return cfg
