"""Configuration file loading and saving for deepseek-cli.

Reads TOML config from ~/.config/deepseek-cli/config.toml (or
$XDG_CONFIG_HOME/deepseek-cli/config.toml). Precedence:
CLI > environment > config file > defaults.
"""

import json
import os
import sys
import tomllib
from pathlib import Path

from .errors import ConfigError

APP_NAME = "deepseek-cli"

# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "api_key": str,
    "default_model": str,
    "default_temperature": (int, float),
    "openai_api_key": str,
    "xai_api_key": str,
    "grok_api_key": str,
    "groq_api_key": str,
    "provider": str,
    "max_rounds": int,
    "system_prompt": str,
}

# `config set/get` key name -> config file key
SETTABLE_KEYS: dict[str, str] = {
    "api-key": "api_key",
    "model": "default_model",
    "default-temperature": "default_temperature",
}

DEFAULT_MODEL = "deepseek-chat"
DEFAULT_TEMPERATURE = 0.7

_MCP_SERVER_FIELD_TYPES: dict[str, type] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
}


def config_dir() -> Path:
    """Return the config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def config_path() -> Path:
    return config_dir() / "config.toml"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Raise ConfigError for type mismatches; warn about unknown keys."""
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for numeric fields.
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )


def validate_mcp_servers(servers: dict, source: str) -> None:
    """Validate structure and field types of MCP server configurations."""
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        prefix = f"{source}: mcp_servers.{name}"
        if not isinstance(cfg, dict):
            raise ConfigError(f"{prefix} must be a table")
        if ("command" in cfg) == ("url" in cfg):
            raise ConfigError(f"{prefix} must have exactly one of 'command' or 'url'")
        for fname, expected in _MCP_SERVER_FIELD_TYPES.items():
            if fname in cfg and not isinstance(cfg[fname], expected):
                raise ConfigError(
                    f"{prefix}.{fname}: expected {expected.__name__}, "
                    f"got {type(cfg[fname]).__name__}"
                )
        for i, elem in enumerate(cfg.get("args", [])):
            if not isinstance(elem, str):
                raise ConfigError(f"{prefix}.args[{i}]: expected string, got {type(elem).__name__}")
        for dict_field in ("env", "headers"):
            for k, v in cfg.get(dict_field, {}).items():
                if not isinstance(v, str):
                    raise ConfigError(
                        f"{prefix}.{dict_field}.{k}: expected string, got {type(v).__name__}"
                    )


def load_config(path: Path | None = None) -> dict:
    """Load and validate the config file. Returns {} if it does not exist."""
    path = path or config_path()
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e

    # mcp_servers is a nested table, validated separately
    mcp_servers = config.pop("mcp_servers", None)
    _validate_config(config, str(path))
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if mcp_servers is not None:
        if not isinstance(mcp_servers, dict):
            raise ConfigError(f"{path}: 'mcp_servers' must be a table")
        validate_mcp_servers(mcp_servers, str(path))
        known["mcp_servers"] = mcp_servers
    return known


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Load MCP server configs from a .mcp.json file (``mcpServers`` object)."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError(f"{path}: 'mcpServers' must be a JSON object")
    validate_mcp_servers(servers, str(path))
    return servers


# --- Writing ---


def _toml_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        # JSON string escaping is valid TOML basic-string escaping
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{json.dumps(k)} = {_toml_value(v)}" for k, v in value.items())
        return "{ " + inner + " }" if inner else "{}"
    raise ConfigError(f"cannot serialize {type(value).__name__} to TOML")


def dump_config(config: dict) -> str:
    """Render a config dict as TOML text (flat keys, then mcp_servers tables)."""
    lines = []
    for key, value in config.items():
        if key == "mcp_servers" or value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")
    for name, server in (config.get("mcp_servers") or {}).items():
        lines.append("")
        lines.append(f"[mcp_servers.{name}]")
        for key, value in server.items():
            lines.append(f"{key} = {_toml_value(value)}")
    return "\n".join(lines) + "\n"


def save_config(config: dict, path: Path | None = None) -> Path:
    path = path or config_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_config(config), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot write file: {e}") from e
    if sys.platform != "win32":
        # The file holds API keys.
        path.chmod(0o600)
    return path


def set_value(key: str, raw: str, path: Path | None = None) -> dict:
    """Implement ``config set KEY VALUE``. Returns the updated config."""
    if key not in SETTABLE_KEYS:
        raise ConfigError(f"unknown key {key!r}; expected one of {', '.join(SETTABLE_KEYS)}")
    config = load_config(path)
    dest = SETTABLE_KEYS[key]
    if dest == "default_temperature":
        try:
            config[dest] = float(raw)
        except ValueError:
            raise ConfigError(f"invalid temperature {raw!r}")
    else:
        config[dest] = raw
    save_config(config, path)
    return config


def mask_key(key: str) -> str:
    if len(key) > 10:
        return f"{key[:6]}...{key[-4:]}"
    if len(key) > 6:
        return f"{key[:3]}...{key[-3:]}"
    return f"**** ({len(key)} chars)"


def get_value(key: str | None, config: dict) -> str:
    """Implement ``config get [KEY]`` output."""
    if key is None:
        shown = dict(config)
        for k in ("api_key", "openai_api_key", "xai_api_key", "grok_api_key", "groq_api_key"):
            if k in shown:
                shown[k] = mask_key(shown[k])
        return dump_config(shown).rstrip("\n")
    if key == "api-key":
        value = config.get("api_key")
        return f"API Key: {mask_key(value)}" if value else "API Key: (not set)"
    if key == "model":
        return f"Model: {config.get('default_model', DEFAULT_MODEL)}"
    if key == "default-temperature":
        return f"Temperature: {config.get('default_temperature', DEFAULT_TEMPERATURE)}"
    raise ConfigError(f"unknown key {key!r}; expected one of {', '.join(SETTABLE_KEYS)}")
