"""Configuration management for ubmsc with hot-reload and validation."""

import copy
import json
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent

from jsonschema import ValidationError, validate
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

ENV_PREFIX = "UBMSC_"
CONFIG_DIR_ENV = "UBMSC_CONFIG_DIR"

CONFIG_FILES: dict[str, str] = {
    "system": "system.json",
    "devices": "devices.json",
}

DEFAULTS: dict[str, dict] = {
    "system": {
        "version": "1.0",
        "logging": {"level": "INFO"},
        "bluetooth": {
            "scan_timeout": 30,
            "request_timeout": 5,
            "connect_timeout": 10,
            "adapter": None,
        },
        "mqtt": {
            "enabled": False,
            "broker": "localhost",
            "port": 1883,
            "username": "",
            "password": "",
            "topic_prefix": "ubmsc",
            "qos": 1,
            "keepalive": 60,
            "retain": False,
            "interval": 60,
            "retries": 3,
            "retry_delay": 1.0,
        },
    },
    "devices": {"version": "1.0", "devices": []},
}

_NUMBER = {"type": "number", "minimum": 0}

SCHEMAS: dict[str, dict] = {
    "system": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "logging": {
                "type": "object",
                "properties": {
                    "level": {
                        "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                    },
                },
            },
            "bluetooth": {
                "type": "object",
                "properties": {
                    "scan_timeout": _NUMBER,
                    "request_timeout": _NUMBER,
                    "connect_timeout": _NUMBER,
                    "adapter": {"type": ["string", "null"]},
                },
            },
            "mqtt": {
                "type": "object",
                "properties": {
                    "enabled": {"type": "boolean"},
                    "broker": {"type": "string"},
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    "username": {"type": "string"},
                    "password": {"type": "string"},
                    "topic_prefix": {"type": "string", "minLength": 1},
                    "qos": {"enum": [0, 1, 2]},
                    "keepalive": {"type": "integer", "minimum": 0},
                    "retain": {"type": "boolean"},
                    "interval": {"type": "number", "exclusiveMinimum": 0},
                    "retries": {"type": "integer", "minimum": 1},
                    "retry_delay": _NUMBER,
                },
            },
        },
        "required": ["version", "logging", "bluetooth", "mqtt"],
    },
    "devices": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "devices": {"type": "array", "items": {"type": "string", "minLength": 1}},
        },
        "required": ["version", "devices"],
    },
}


def default_config_dir() -> str:
    """Return ``$UBMSC_CONFIG_DIR`` or ``~/.config/ubmsc``."""
    return os.environ.get(CONFIG_DIR_ENV) or os.path.join(os.path.expanduser("~"), ".config", "ubmsc")


def merge_defaults(config: dict, default: dict) -> dict:
    """Recursively merge default values into config, filling in missing keys."""
    for k, v in default.items():
        if k not in config:
            config[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(config[k], dict):
            merge_defaults(config[k], v)
    return config


def resolve_env_path(config: dict, parts: list[str]) -> list[str]:
    """
    Split the words of an environment variable name into config keys.

    Keys may themselves contain underscores, so at each level the longest run
    of words naming an existing key wins. Words left over name a new key.

    Example:
        ``["bluetooth", "scan", "timeout"]`` resolves to
        ``["bluetooth", "scan_timeout"]`` against the default system config.
    """
    keys: list[str] = []
    node: Any = config
    i = 0
    while i < len(parts):
        for j in range(len(parts), i, -1):
            candidate = "_".join(parts[i:j])
            if isinstance(node, dict) and candidate in node:
                keys.append(candidate)
                node = node[candidate]
                i = j
                break
        else:
            keys.append("_".join(parts[i:]))
            break
    return keys


class ConfigError(Exception):
    """Custom exception for configuration errors."""


class ConfigReloadHandler(FileSystemEventHandler):
    """Watches for file modifications and triggers a reload callback."""

    def __init__(self, reload_callback: Callable[[str], None]) -> None:
        """
        Initialize the handler.

        Args:
            reload_callback: Function to call with the path of the modified file.
        """
        self.reload_callback = reload_callback

    def on_modified(self, event: "FileSystemEvent") -> None:
        """Forward modifications of regular files."""
        if event.is_directory:
            return
        self.reload_callback(os.fsdecode(event.src_path))


class ConfigManager:
    """Manages ubmsc configuration files with hot-reload, schema validation, and env var overrides."""

    def __init__(
        self,
        config_dir: str | None = None,
        *,
        enable_watchers: bool = True,
    ) -> None:
        """
        Initialize the ConfigManager.

        Args:
            config_dir: Directory where config files are stored; see :func:`default_config_dir`.
            enable_watchers: Whether to reload files when they change on disk.

        Raises:
            ConfigError: If the directory cannot be created or a file fails validation.
        """
        self.config_dir: str = config_dir or default_config_dir()
        self.configs: dict[str, dict] = {}
        self._listeners: list[Callable[[str, dict], None]] = []
        self.logger = logging.getLogger("ubmsc.config")
        self._enable_watchers = enable_watchers
        self._observer: Any = None
        try:
            os.makedirs(self.config_dir, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create config directory {self.config_dir}: {e}") from e
        self._load_all_configs()
        if self._enable_watchers:
            self._setup_watchers()

    def _load_all_configs(self) -> None:
        for key, filename in CONFIG_FILES.items():
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
            self._validate_config(key)
        self._apply_env_overrides()

    def _load_json(self, filename: str, default: dict) -> dict:
        """
        Load a JSON config file, or create it with defaults if missing or invalid.

        Missing keys are filled in from the defaults.
        """
        path = os.path.join(self.config_dir, filename)
        if not os.path.exists(path):
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise TypeError(f"Config {filename} must be a dict")
        except (json.JSONDecodeError, TypeError, OSError):
            self.logger.exception("Failed to load %s. Restoring default config.", filename)
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config
        return merge_defaults(data, default)

    def _save_json(self, filename: str, data: dict) -> None:
        """
        Save a config dict to a JSON file.

        Raises:
            ConfigError: If saving fails.
        """
        path = os.path.join(self.config_dir, filename)
        try:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            self.logger.exception("Failed to save %s", filename)
            raise ConfigError(f"Failed to save {filename}: {e}") from e

    def _validate_config(self, key: str) -> None:
        """
        Validate a config dict against its schema.

        Raises:
            ConfigError: If validation fails.
        """
        try:
            validate(instance=self.configs[key], schema=SCHEMAS[key])
        except ValidationError as e:
            self.logger.error("Validation error in %s config: %s", key, e.message)
            raise ConfigError(f"Validation error in {key} config: {e.message}") from e

    def _apply_env_overrides(self) -> None:
        """
        Apply UBMSC_ environment variable overrides to configs.

        Format: UBMSC_SECTION_KEY..._KEY=VALUE, e.g. UBMSC_SYSTEM_MQTT_BROKER=mqtt.local.
        Values are parsed as JSON when possible and kept as strings otherwise.
        """
        for env_key, value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX) or env_key == CONFIG_DIR_ENV:
                continue
            parts = env_key[len(ENV_PREFIX) :].lower().split("_")
            section = parts[0]
            if section not in self.configs or len(parts) < 2:
                continue
            keys = resolve_env_path(self.configs[section], parts[1:])
            try:
                d = self.configs[section]
                for k in keys[:-1]:
                    d = d.setdefault(k, {})
                try:
                    parsed_value = json.loads(value)
                except ValueError:
                    parsed_value = value
                d[keys[-1]] = parsed_value
            except (AttributeError, TypeError):
                self.logger.exception("Failed to apply env override %s", env_key)
                continue
            self.logger.info(
                "Applied env override: %s -> %s %s = %s",
                env_key,
                section,
                ".".join(keys),
                parsed_value,
            )

    def _setup_watchers(self) -> None:
        """Watch the config directory for edits using watchdog."""
        self._observer = Observer()
        self._observer.schedule(
            ConfigReloadHandler(self._on_config_change),
            self.config_dir,
            recursive=False,
        )
        self._observer.start()

    def cleanup(self) -> None:
        """Stop the file watcher, if any."""
        if self._observer is not None and self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=1.0)
        self._observer = None

    def _on_config_change(self, path: str) -> None:
        """Reload, re-validate and announce a changed config file."""
        for key, filename in CONFIG_FILES.items():
            if os.path.abspath(os.path.join(self.config_dir, filename)) != os.path.abspath(path):
                continue
            self.logger.info("Detected change in %s, reloading...", filename)
            previous = self.configs[key]
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
            try:
                self._validate_config(key)
            except ConfigError:
                self.logger.error("Keeping previous %s config after failed validation", key)
                self.configs[key] = previous
                return
            self._apply_env_overrides()
            self._notify_listeners(key, self.configs[key])

    def get_config(self, key: str) -> dict:
        """
        Get a config by key ('system' or 'devices').

        Raises:
            KeyError: If the config key is not found.
        """
        if key not in self.configs:
            raise KeyError(f"Config '{key}' not found.")
        return self.configs[key]

    def save_config(self, key: str) -> None:
        """
        Save a config by key back to its file.

        Raises:
            KeyError: If the config key is not recognized.
            ConfigError: If the config is invalid or cannot be written.
        """
        if key not in CONFIG_FILES:
            raise KeyError(f"Config '{key}' not recognized.")
        self._validate_config(key)
        self._save_json(CONFIG_FILES[key], self.configs[key])

    def register_listener(self, callback: Callable[[str, dict], None]) -> None:
        """
        Register a callback to be notified when a config changes.

        Args:
            callback: Function to call with (key, config) when a config changes.
        """
        self._listeners.append(callback)

    def _notify_listeners(self, key: str, config: dict) -> None:
        for cb in self._listeners:
            try:
                cb(key, config)
            except Exception:  # noqa: BLE001
                self.logger.exception("Listener callback failed")
