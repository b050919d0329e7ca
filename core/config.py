"""
Configuration loader for stooge.
Merges defaults, an optional .stooge.yml file and STOOGE_* environment variables.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from yaml.nodes import MappingNode, SequenceNode


class ConfigError(Exception):
    """Raised when the configuration fails validation."""

    def __init__(self, path: Optional[Path], errors: list[str]) -> None:
        self.path = path
        self.errors = errors
        super().__init__("; ".join(errors))

    def __str__(self) -> str:
        where = f"{self.path}: " if self.path else ""
        return where + "; ".join(self.errors)


# Default configuration values
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5000
DEFAULT_SHELL = "/bin/sh"
DEFAULT_LOG_LEVEL = "INFO"

CONFIG_FILENAMES = (".stooge.yml", ".stooge.yaml")

_ALLOWED_TOP_LEVEL_KEYS = {
    "host",
    "port",
    "dir",
    "commands",
    "secret",
    "shell",
    "log_level",
}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def default_config() -> dict[str, Any]:
    return {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "dir": None,
        "commands": [],
        "secret": None,
        "shell": DEFAULT_SHELL,
        "log_level": DEFAULT_LOG_LEVEL,
    }


def parse_port(value: Any) -> int:
    """Return `value` as a TCP port number or raise ValueError."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid port: {value!r}")
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port: {value!r}")
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range (1-65535): {port}")
    return port


def _key_lines(root) -> dict[str, int]:
    """Map each top-level key, and each item of a list value, to its 1-based line."""
    lines: dict[str, int] = {}
    if not isinstance(root, MappingNode):
        return lines
    for key_node, value_node in root.value:
        key = str(key_node.value)
        lines[key] = key_node.start_mark.line + 1
        if isinstance(value_node, SequenceNode):
            for idx, item in enumerate(value_node.value):
                lines[f"{key}[{idx}]"] = item.start_mark.line + 1
    return lines


def _error_at(errors: list[str], lines: dict[str, int], key: str, message: str) -> None:
    errors.append(f"line {lines.get(key, '?')} ({key}): {message}")


def _validate_config_data(data: Any, lines: dict[str, int]) -> list[str]:
    errors: list[str] = []
    if data is None:
        return errors
    if not isinstance(data, dict):
        errors.append("line ? (root): Config must be a mapping (key/value pairs).")
        return errors

    for key in data:
        if key not in _ALLOWED_TOP_LEVEL_KEYS:
            _error_at(
                errors,
                lines,
                str(key),
                "Unknown field. Allowed: " + ", ".join(sorted(_ALLOWED_TOP_LEVEL_KEYS)),
            )

    if "host" in data and not isinstance(data["host"], str):
        _error_at(errors, lines, "host", "Expected a string.")

    if "port" in data:
        try:
            parse_port(data["port"])
        except ValueError as e:
            _error_at(errors, lines, "port", f"{e}.")

    if "dir" in data and data["dir"] is not None and not isinstance(data["dir"], str):
        _error_at(errors, lines, "dir", "Expected a string or null.")

    if "commands" in data:
        commands = data["commands"]
        if commands is not None and not isinstance(commands, list):
            _error_at(errors, lines, "commands", "Expected a list of strings.")
        elif isinstance(commands, list):
            for idx, item in enumerate(commands):
                where = f"commands[{idx}]"
                if not isinstance(item, str):
                    _error_at(errors, lines, where, "Expected a string.")
                elif not item.strip():
                    _error_at(errors, lines, where, "Command is empty.")
                elif "\x00" in item:
                    _error_at(errors, lines, where, "Command contains a NUL byte.")

    if "secret" in data and data["secret"] is not None and not isinstance(data["secret"], str):
        _error_at(errors, lines, "secret", "Expected a string or null.")

    if "shell" in data:
        if not isinstance(data["shell"], str):
            _error_at(errors, lines, "shell", "Expected a string.")
        elif "\x00" in data["shell"]:
            _error_at(errors, lines, "shell", "Shell path contains a NUL byte.")

    if "log_level" in data:
        if str(data["log_level"]).upper() not in _VALID_LOG_LEVELS:
            _error_at(
                errors,
                lines,
                "log_level",
                "Expected one of " + ", ".join(sorted(_VALID_LOG_LEVELS)) + ".",
            )

    return errors


def _load_yaml_with_lines(raw: str) -> tuple[Any, dict[str, int]]:
    if not raw.strip():
        return {}, {}
    lines = _key_lines(yaml.compose(raw))
    data = yaml.safe_load(raw)
    return ({} if data is None else data), lines


def find_config_file(search_dir: Path) -> Optional[Path]:
    for name in CONFIG_FILENAMES:
        candidate = search_dir / name
        if candidate.exists():
            return candidate
    return None


def _apply_file(config: dict[str, Any], config_path: Path) -> None:
    try:
        raw = config_path.read_text(encoding="utf-8", errors="replace")
        data, lines = _load_yaml_with_lines(raw)
    except yaml.YAMLError as e:
        problem = getattr(e, "problem", "Invalid YAML")
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            msg = f"{problem} at line {mark.line + 1}, column {mark.column + 1}."
        else:
            msg = str(problem)
        raise ConfigError(config_path, [msg]) from e
    except OSError as e:
        raise ConfigError(config_path, [f"Failed to read config: {e}"]) from e

    errors = _validate_config_data(data, lines)
    if errors:
        raise ConfigError(config_path, errors)

    if "host" in data:
        config["host"] = data["host"].strip() or DEFAULT_HOST
    if "port" in data:
        config["port"] = parse_port(data["port"])
    if "dir" in data:
        config["dir"] = data["dir"] or None
    if "commands" in data:
        config["commands"] = list(data["commands"] or [])
    if "secret" in data:
        config["secret"] = data["secret"] or None
    if "shell" in data:
        config["shell"] = data["shell"]
    if "log_level" in data:
        config["log_level"] = str(data["log_level"]).upper()


def _apply_env(config: dict[str, Any]) -> None:
    env_host = os.getenv("STOOGE_HOST")
    if env_host and env_host.strip():
        config["host"] = env_host.strip()

    env_port = os.getenv("STOOGE_PORT")
    if env_port is not None and env_port.strip():
        try:
            config["port"] = parse_port(env_port)
        except ValueError as e:
            raise ConfigError(None, [f"STOOGE_PORT: {e}"])

    env_dir = os.getenv("STOOGE_DIR")
    if env_dir and env_dir.strip():
        config["dir"] = env_dir.strip()

    env_secret = os.getenv("STOOGE_WEBHOOK_SECRET")
    if env_secret:
        config["secret"] = env_secret

    env_shell = os.getenv("STOOGE_SHELL")
    if env_shell and env_shell.strip():
        config["shell"] = env_shell.strip()

    env_level = os.getenv("STOOGE_LOG_LEVEL", "").strip().upper()
    if env_level:
        if env_level not in _VALID_LOG_LEVELS:
            raise ConfigError(None, [f"STOOGE_LOG_LEVEL: unknown level {env_level!r}"])
        config["log_level"] = env_level


def load_config(config_path: Optional[Path] = None, search_dir: Optional[Path] = None) -> dict[str, Any]:
    """
    Load stooge configuration.

    Uses `config_path` when given (it must exist), otherwise looks for
    .stooge.yml or .stooge.yaml in `search_dir` (default: current directory).
    Environment variables override file values:
    - STOOGE_HOST, STOOGE_PORT, STOOGE_DIR
    - STOOGE_WEBHOOK_SECRET, STOOGE_SHELL, STOOGE_LOG_LEVEL

    Returns:
        Config dict with keys: host, port, dir, commands, secret, shell, log_level
    """
    config = default_config()

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(config_path, ["Config file not found"])
        _apply_file(config, config_path)
    else:
        found = find_config_file(search_dir or Path.cwd())
        if found is not None:
            _apply_file(config, found)

    _apply_env(config)
    return config
