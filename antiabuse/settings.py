"""Anti-abuse settings — immutable snapshots behind a live provider.

Every decision reads ``provider.current()`` once and works off that frozen
snapshot, so an admin changing thresholds mid-request can't produce a
decision that mixes old and new values.

Settings files are YAML with the same keys as the dataclass fields:

    enable_anti_abuse: true
    model_switch_threshold: 10
    test_content_patterns: |
      hi
      hello
    whitelist_user_ids: "1, 42"
"""

from __future__ import annotations

import dataclasses
import os
import threading
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import yaml

from antiabuse.exceptions import SettingsError
from antiabuse.models import PenaltyType

DEFAULT_TEST_CONTENT_PATTERNS = "\n".join([
    "hi",
    "hello",
    "test",
    "ping",
    "你好",
    "测试",
])

# Fields the admin update path resets to their default when given a
# non-positive value.
_POSITIVE_FIELDS = (
    "model_switch_window_minutes",
    "model_switch_threshold",
    "min_content_length",
    "test_content_threshold",
    "test_content_window_minutes",
    "temp_ban_duration_minutes",
    "rate_limit_requests",
)


@dataclass(frozen=True)
class SecuritySettings:
    enable_anti_abuse: bool = False

    model_switch_window_minutes: int = 5
    model_switch_threshold: int = 10

    test_content_patterns: str = DEFAULT_TEST_CONTENT_PATTERNS
    min_content_length: int = 10
    test_content_threshold: int = 20
    test_content_window_minutes: int = 5

    abuse_score_warning_threshold: int = 50
    abuse_score_action_threshold: int = 80

    penalty_type: str = PenaltyType.RATE_LIMIT.value
    temp_ban_duration_minutes: int = 30
    rate_limit_requests: int = 5

    whitelist_user_ids: str = ""
    whitelist_groups: str = ""

    # Keep recording signals for whitelisted callers so their scores stay
    # visible to admins.
    record_whitelisted_signals: bool = True

    # Parsed views of the string fields.  cached_property writes to the
    # instance __dict__ directly, which a frozen dataclass allows.

    @cached_property
    def pattern_list(self) -> tuple[str, ...]:
        """Newline-delimited patterns, trimmed, lower-cased, blanks dropped."""
        return tuple(
            p.strip().lower()
            for p in self.test_content_patterns.splitlines()
            if p.strip()
        )

    @cached_property
    def whitelist_user_id_set(self) -> frozenset[int]:
        """Comma-separated user IDs; entries that aren't integers are ignored."""
        ids = set()
        for part in self.whitelist_user_ids.split(","):
            part = part.strip()
            if part.isdigit():
                ids.add(int(part))
        return frozenset(ids)

    @cached_property
    def whitelist_group_set(self) -> frozenset[str]:
        return frozenset(
            g.strip() for g in self.whitelist_groups.split(",") if g.strip()
        )

    def is_user_whitelisted(self, user_id: int) -> bool:
        return user_id in self.whitelist_user_id_set

    def is_group_whitelisted(self, group: str) -> bool:
        return bool(group) and group in self.whitelist_group_set

    def sanitized(self) -> "SecuritySettings":
        """Copy with non-positive windows/thresholds reset to defaults and an
        unknown penalty type replaced by the default."""
        defaults = SecuritySettings()
        changes = {
            name: getattr(defaults, name)
            for name in _POSITIVE_FIELDS
            if getattr(self, name) < 1
        }
        if self.penalty_type not in {t.value for t in PenaltyType}:
            changes["penalty_type"] = defaults.penalty_type
        return dataclasses.replace(self, **changes) if changes else self


_FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(SecuritySettings)}


def settings_from_dict(data: dict, source: str = "<dict>") -> SecuritySettings:
    """Build a snapshot from a plain mapping, rejecting unknown keys and
    values of the wrong type."""
    if not isinstance(data, dict):
        raise SettingsError(f"{source}: settings must be a mapping")

    values = {}
    for key, value in data.items():
        if key not in _FIELD_TYPES:
            raise SettingsError(f"{source}: unknown setting '{key}'")
        expected = _FIELD_TYPES[key]
        if expected == "bool":
            if not isinstance(value, bool):
                raise SettingsError(f"{source}: '{key}' must be true or false")
        elif expected == "int":
            if isinstance(value, bool) or not isinstance(value, int):
                raise SettingsError(f"{source}: '{key}' must be an integer")
        elif expected == "str":
            if value is None:
                value = ""
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                # YAML turns `whitelist_user_ids: 42` into an int.
                value = str(value)
            elif isinstance(value, list):
                sep = "\n" if key == "test_content_patterns" else ","
                value = sep.join(str(v) for v in value)
            elif not isinstance(value, str):
                raise SettingsError(f"{source}: '{key}' must be a string")
        values[key] = value
    return SecuritySettings(**values).sanitized()


def load_settings(path: str | Path) -> SecuritySettings:
    """Parse a YAML settings file.  An empty file yields the defaults."""
    path = Path(path)
    if not path.is_file():
        raise SettingsError(f"Settings file not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(f"{path.name}: invalid YAML: {e}") from e
    if data is None:
        return SecuritySettings()
    return settings_from_dict(data, source=path.name)


class SettingsProvider:
    """Holds the live settings snapshot; swaps it atomically on update."""

    def __init__(self, settings: SecuritySettings | None = None):
        self._lock = threading.Lock()
        self._settings = (settings or SecuritySettings()).sanitized()

    def current(self) -> SecuritySettings:
        with self._lock:
            return self._settings

    def replace(self, settings: SecuritySettings) -> None:
        with self._lock:
            self._settings = settings.sanitized()

    def update(self, **changes) -> SecuritySettings:
        """Apply a partial update the way the admin settings endpoint does."""
        with self._lock:
            merged = dataclasses.asdict(self._settings)
            merged.update(changes)
            self._settings = settings_from_dict(merged, source="update")
            return self._settings


class FileSettingsProvider(SettingsProvider):
    """SettingsProvider backed by a YAML file, re-read when its mtime moves."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(load_settings(self.path))
        self._mtime = os.stat(self.path).st_mtime

    def reload_if_changed(self) -> bool:
        """Re-read the file if it changed.  A broken file keeps the previous
        snapshot in force and raises SettingsError."""
        try:
            mtime = os.stat(self.path).st_mtime
        except FileNotFoundError as e:
            raise SettingsError(f"Settings file not found: {self.path}") from e
        if mtime == self._mtime:
            return False
        settings = load_settings(self.path)
        with self._lock:
            self._settings = settings
            self._mtime = mtime
        return True
