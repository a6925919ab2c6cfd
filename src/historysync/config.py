"""
Settings loading for the history-sync service.

Configuration comes from a TOML file (``WA_RECAP_CONFIG``, default
``/etc/wa-recap/settings.toml``).  Credentials never live in that file;
the summarizer API key is read from the keychain via
:func:`shared.secrets.get_secret`.

Tracked conversation ids are the union of ``recap.tracked_conversation_ids``
and the ``tracked_conversations.json`` file maintained by
``wa-recap-tracked``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Optional

import toml

from historysync.folder import FAILURE_POLICIES
from historysync.summarizer import DEFAULT_MODEL
from historysync.trigger import DEFAULT_PROMPT_HEADER
from shared.secrets import get_secret

logger = logging.getLogger("historysync.config")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("WA_RECAP_CONFIG", "/etc/wa-recap/settings.toml")
)
_TRACKED_FILENAME = "tracked_conversations.json"


@dataclass(frozen=True)
class Settings:
    database: Dict[str, Any]
    identity_store_path: Path
    tracked_conversation_ids: FrozenSet[str]
    summarizer_api_key: str = field(repr=False)
    client_factory: str = ""
    summarizer_model: str = DEFAULT_MODEL
    summarizer_max_tokens: int = 2048
    prompt_header: str = DEFAULT_PROMPT_HEADER
    system_prompt_path: Optional[Path] = None
    failure_policy: str = "isolate"
    disconnect_timeout: float = 10.0
    audit_log_path: Path = Path("/var/log/wa-recap/audit.log")


# ---------------------------------------------------------------------------
# Raw config
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("database",),
        ("recap", "identity_store_path"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    config["_meta_config_path"] = str(path)
    return config


# ---------------------------------------------------------------------------
# Tracked conversations
# ---------------------------------------------------------------------------


def get_tracked_file_path(config: Dict[str, Any]) -> Path:
    """Resolve ``tracked_conversations.json``.

    Preference order: ``recap.tracked_file_path``, then alongside the
    loaded settings file, then ``/etc/wa-recap``.
    """
    configured = config.get("recap", {}).get("tracked_file_path")
    if configured:
        return Path(configured)
    cfg_path = config.get("_meta_config_path")
    if cfg_path:
        return Path(cfg_path).resolve().parent / _TRACKED_FILENAME
    return Path("/etc/wa-recap") / _TRACKED_FILENAME


def load_tracked_file(path: Path) -> Dict[str, str]:
    """Return ``{conversation_id: label}`` from the tracked file.

    A missing or malformed file yields an empty mapping.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        tracked = data.get("tracked", {})
        return {str(k): str(v) for k, v in tracked.items()}
    except (json.JSONDecodeError, AttributeError, TypeError):
        logger.warning("Invalid %s at %s, ignoring", _TRACKED_FILENAME, path)
        return {}


def save_tracked_file(path: Path, tracked: Dict[str, str]) -> Path:
    payload = {"tracked": {k: v for k, v in sorted(tracked.items())}}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return path


def normalize_tracked_ids(value: Any) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(v) for v in value]
    else:
        raise ValueError(
            f"recap.tracked_conversation_ids must be a list or string, "
            f"got {type(value).__name__}"
        )
    return {item.strip() for item in items if item and item.strip()}


def resolve_tracked_ids(config: Dict[str, Any]) -> FrozenSet[str]:
    """Union of configured and file-managed tracked ids.

    Raises:
        ValueError: If the effective set is empty.
    """
    ids = normalize_tracked_ids(config.get("recap", {}).get("tracked_conversation_ids"))
    ids |= set(load_tracked_file(get_tracked_file_path(config)))
    if not ids:
        raise ValueError(
            "No tracked conversations configured: set recap.tracked_conversation_ids "
            "or add ids with wa-recap-tracked"
        )
    return frozenset(ids)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def build_settings(
    config: Dict[str, Any],
    secret_loader: Callable[[str], str] = get_secret,
) -> Settings:
    """Turn a validated raw config into :class:`Settings`.

    Raises:
        ValueError: On invalid values.
        RuntimeError: If the summarizer API key is not in the keychain.
    """
    recap = config.get("recap", {})
    summarizer = config.get("summarizer", {})
    protocol = config.get("protocol", {})

    failure_policy = str(recap.get("failure_policy", "isolate")).lower()
    if failure_policy not in FAILURE_POLICIES:
        raise ValueError(
            f"recap.failure_policy must be one of {FAILURE_POLICIES}, got {failure_policy!r}"
        )

    try:
        disconnect_timeout = float(recap.get("disconnect_timeout_seconds", 10.0))
    except (TypeError, ValueError):
        raise ValueError("recap.disconnect_timeout_seconds must be a number")
    if disconnect_timeout <= 0:
        raise ValueError("recap.disconnect_timeout_seconds must be positive")

    system_prompt_path = summarizer.get("system_prompt_path")

    return Settings(
        database=dict(config["database"]),
        identity_store_path=Path(recap["identity_store_path"]),
        tracked_conversation_ids=resolve_tracked_ids(config),
        summarizer_api_key=secret_loader(summarizer.get("api_key_name", "anthropic_api_key")),
        client_factory=str(protocol.get("client_factory", "")),
        summarizer_model=str(summarizer.get("model", DEFAULT_MODEL)),
        summarizer_max_tokens=int(summarizer.get("max_tokens", 2048)),
        prompt_header=str(summarizer.get("prompt_header", DEFAULT_PROMPT_HEADER)),
        system_prompt_path=Path(system_prompt_path) if system_prompt_path else None,
        failure_policy=failure_policy,
        disconnect_timeout=disconnect_timeout,
        audit_log_path=Path(recap.get("audit_log_path", "/var/log/wa-recap/audit.log")),
    )
