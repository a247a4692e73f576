import os
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from core.logging_utils import log_json
from core.exceptions import ConfigurationError
from core.phases import AUTONOMY_NAMES, MODE_NAMES

# A check takes (key, raw value) and returns (accepted, normalised value, reason).
Check = Callable[[str, Any], Tuple[bool, Any, str]]


def _positive_int(key: str, raw: Any) -> Tuple[bool, Any, str]:
    if isinstance(raw, bool):
        return False, None, f"{key} must be a positive integer, got {raw!r}"
    try:
        number = int(raw)
    except (TypeError, ValueError):
        return False, None, f"{key} must be a positive integer, got {raw!r}"
    if number <= 0:
        return False, None, f"{key} must be a positive integer, got {raw!r}"
    return True, number, ""


def _port(key: str, raw: Any) -> Tuple[bool, Any, str]:
    ok, number, reason = _positive_int(key, raw)
    if ok and number > 65535:
        return False, None, f"{key} must be a TCP port (1-65535), got {raw!r}"
    return ok, number, reason


_TRUTHY = ("true", "1", "yes", "on")
_FALSY = ("false", "0", "no", "off")


def _flag(key: str, raw: Any) -> Tuple[bool, Any, str]:
    if isinstance(raw, bool):
        return True, raw, ""
    text = str(raw).strip().lower() if isinstance(raw, (str, int)) else ""
    if text in _TRUTHY or text in _FALSY:
        return True, text in _TRUTHY, ""
    return False, None, f"{key} must be a boolean, got {raw!r}"


def _text(key: str, raw: Any) -> Tuple[bool, Any, str]:
    if isinstance(raw, str) and raw.strip():
        return True, raw.strip(), ""
    return False, None, f"{key} must be a non-empty string, got {raw!r}"


def _one_of(*choices: str) -> Check:
    def check(key: str, raw: Any) -> Tuple[bool, Any, str]:
        text = raw.strip().lower() if isinstance(raw, str) else None
        if text in choices:
            return True, text, ""
        return False, None, f"{key} must be one of {list(choices)}, got {raw!r}"
    return check


# key: (default, check)
_SETTINGS: Dict[str, Tuple[Any, Check]] = {
    "playback_interval_ms":  (800, _positive_int),
    "default_autonomy":      ("supervised", _one_of(*AUTONOMY_NAMES)),
    "default_mode":          ("greenfield", _one_of(*MODE_NAMES)),
    "gate_rejection_policy": ("terminal", _one_of("terminal", "reopen")),
    "loops_dir":             ("loops", _text),
    "skills_dir":            ("skills", _text),
    "strict_registry":       (True, _flag),
    "server_host":           ("0.0.0.0", _text),
    "server_port":           (3002, _port),
    "max_runs":              (100, _positive_int),
}

DEFAULT_CONFIG: Dict[str, Any] = {key: default for key, (default, _) in _SETTINGS.items()}

# Environment names kept from the standalone orchestrator server.
_LEGACY_ENV = {
    "PORT": "server_port",
    "HOST": "server_host",
    "SKILLS_PATH": "skills_dir",
}


class ConfigManager:
    """
    Loop engine settings, layered lowest to highest:
    built-in defaults, the JSON config file, environment, explicit overrides.

    Environment values arrive as strings; every known key is checked on read
    and an unusable value falls back to its default with an ERROR log.
    """
    def __init__(self, config_file="loop_engine.config.json", overrides: Optional[Dict[str, Any]] = None):
        self.config_file = Path(config_file)
        self.runtime_overrides: Dict[str, Any] = dict(overrides or {})
        self.file_config: Dict[str, Any] = {}
        self.effective_config: Dict[str, Any] = {}
        self.refresh()

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_file.is_file():
            return {}
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            log_json("ERROR", "config_parse_failed",
                     details={"path": str(self.config_file), "error": str(exc)})
            raise ConfigurationError(f"Config file {self.config_file} is not valid JSON: {exc}")
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file {self.config_file} must contain a JSON object, got {type(data).__name__}"
            )
        log_json("INFO", "config_loaded_from_file", details={"path": str(self.config_file)})
        return data

    @staticmethod
    def _read_env() -> Dict[str, Any]:
        found = {key: os.environ[name] for name, key in _LEGACY_ENV.items() if name in os.environ}
        for key in _SETTINGS:
            name = f"LOOP_{key.upper()}"
            if name in os.environ:
                found[key] = os.environ[name]
        return found

    def refresh(self):
        """Rebuild the effective settings from every layer."""
        self.file_config = self._read_file()
        layered = dict(DEFAULT_CONFIG)
        for layer in (self.file_config, self._read_env(), self.runtime_overrides):
            layered.update(layer)
        self.effective_config = layered

    def _checked(self, key: str, raw: Any) -> Any:
        default, check = _SETTINGS[key]
        ok, value, reason = check(key, raw)
        if ok:
            return value
        log_json("ERROR", "config_value_invalid",
                 details={"key": key, "value": raw, "reason": reason, "fallback": default})
        return default

    def get(self, key: str, default: Any = None) -> Any:
        if key not in _SETTINGS:
            return self.effective_config.get(key, default)
        return self._checked(key, self.effective_config[key])

    def show_config(self) -> Dict[str, Any]:
        """Effective settings with every known key checked."""
        shown = dict(self.effective_config)
        shown.update({key: self.get(key) for key in _SETTINGS})
        return shown

    def set_runtime_override(self, key: str, value: Any):
        self.runtime_overrides[key] = value
        self.refresh()


_config: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Process-wide ConfigManager, loaded on first use."""
    global _config
    if _config is None:
        _config = ConfigManager()
    return _config
