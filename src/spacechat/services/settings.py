"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings
from ..ai.tokens import ContextBudget, build_token_counter
from ..chat.event_log import ChatEventLogger
from ..context.targeting import TargetingWeights
from ..utils.logging import setup_logging
from .persistence import EntityServiceSettings

__all__ = [
    "SecretVault",
    "Settings",
    "SettingsStore",
    "TargetingSettings",
    "chat_event_logger",
    "client_settings",
    "configure_logging",
    "context_budget",
    "entity_service_settings",
    "redact_secret",
    "targeting_weights",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".spacechat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_PREFIX = "SPACECHAT_"
# Settings fields that may be overridden as SPACECHAT_<FIELD>; values are
# parsed according to the type of the field's default.
_ENV_FIELDS: tuple[str, ...] = (
    "auth_token",
    "base_url",
    "model",
    "tokenizer",
    "request_timeout",
    "connect_timeout",
    "max_retries",
    "max_context_tokens",
    "debug_logging",
    "debug_event_logging",
)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_AUTH_TOKEN_FIELD = "auth_token_ciphertext"
TokenizerName = Literal["approx", "tiktoken"]


@dataclass(slots=True)
class TargetingSettings:
    """Scores used when picking a window for a tool call."""

    context_base_score: int = 200
    registry_base_score: int = 100
    active_bonus: int = 50
    entity_bonus: int = 20


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "http://localhost:8000"
    chat_stream_path: str = "/claude/chat/stream"
    tool_output_path: str = "/claude/tool-output"
    models_path: str = "/claude/models"
    entities_path: str = "/entities"
    auth_token: str = ""
    model: str = "claude-sonnet-4-20250514"
    request_timeout: float = 300.0
    connect_timeout: float = 10.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_context_tokens: int = 200_000
    response_token_reserve: int = 8_000
    tokenizer: TokenizerName = "approx"
    debug_logging: bool = False
    debug_event_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    targeting: TargetingSettings = field(default_factory=TargetingSettings)


class SecretVault:
    """Encrypts the auth token with a Fernet key kept beside the settings file.

    Ciphertexts are stored as ``fernet:<token>``; the key file is created on
    first use with owner-only permissions.
    """

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.rpartition(":")
        if prefix and prefix != self.strategy:
            LOGGER.warning("Unknown secret token prefix %s; ignoring stored token.", prefix)
            return ""
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        path = self._key_path
        if path.exists():
            return path.read_bytes().strip()
        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - POSIX permissions
            os.chmod(staging, 0o600)
        staging.replace(path)
        LOGGER.debug("Created settings key at %s", path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            token = self._decrypt_token(payload.pop(_AUTH_TOKEN_FIELD, None))
            if not token and payload.get("auth_token"):
                # Files written before encryption kept the token in plain text.
                token = str(payload["auth_token"])
            data = _filter_fields(payload)
            targeting_payload = data.get("targeting")
            if isinstance(targeting_payload, Mapping):
                try:
                    data["targeting"] = TargetingSettings(**targeting_payload)
                except TypeError:
                    LOGGER.warning("Ignoring invalid targeting settings: %s", targeting_payload)
                    data["targeting"] = TargetingSettings()
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if token:
                settings = replace(settings, auth_token=token)
            if payload.get("version") != _SETTINGS_VERSION:
                LOGGER.debug("Settings version %s differs from %s", payload.get("version"), _SETTINGS_VERSION)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        token = data.pop("auth_token", "") or ""
        ciphertext = self._vault.encrypt(token)
        if ciphertext:
            data[_AUTH_TOKEN_FIELD] = ciphertext
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _decrypt_token(self, ciphertext: str | None) -> str:
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Stored auth token could not be decrypted: %s", exc)
            return ""

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            shown = {
                key: redact_secret(str(value)) if key == "auth_token" else value
                for key, value in sorted(filtered.items())
            }
            LOGGER.debug("Applying %s settings overrides: %s", source, shown)
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        defaults = Settings()
        overrides: Dict[str, Any] = {}
        for field_name in _ENV_FIELDS:
            env_name = f"{_ENV_PREFIX}{field_name.upper()}"
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            template = getattr(defaults, field_name)
            try:
                overrides[field_name] = _parse_env_value(raw, template)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid %s", env_name, raw, type(template).__name__
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _parse_env_value(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(template, int):
        return int(raw, 10)
    if isinstance(template, float):
        return float(raw)
    return raw


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"auth_token"}
    return {key: value for key, value in payload.items() if key in allowed}


def chat_event_logger(settings: Settings, base_dir: Path | str | None = None) -> ChatEventLogger:
    return ChatEventLogger(enabled=settings.debug_event_logging, base_dir=base_dir)


def client_settings(settings: Settings) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        auth_token=settings.auth_token,
        model=settings.model,
        chat_stream_path=settings.chat_stream_path,
        tool_output_path=settings.tool_output_path,
        models_path=settings.models_path,
        request_timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=dict(settings.default_headers) or None,
        debug_logging=settings.debug_logging,
    )


def configure_logging(settings: Settings, *, log_dir: Path | str | None = None, console: bool = True) -> Path:
    return setup_logging(log_dir=log_dir, console=console, trace_turns=settings.debug_logging)


def context_budget(settings: Settings) -> ContextBudget:
    return ContextBudget(
        build_token_counter(settings.tokenizer, settings.model or None),
        max_context_tokens=settings.max_context_tokens,
        response_reserve=settings.response_token_reserve,
    )


def entity_service_settings(settings: Settings) -> EntityServiceSettings:
    return EntityServiceSettings(
        base_url=settings.base_url,
        entities_path=settings.entities_path,
        auth_token=settings.auth_token,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )


def targeting_weights(settings: Settings) -> TargetingWeights:
    targeting = settings.targeting
    return TargetingWeights(
        context_base_score=targeting.context_base_score,
        registry_base_score=targeting.registry_base_score,
        active_bonus=targeting.active_bonus,
        entity_bonus=targeting.entity_bonus,
    )


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
