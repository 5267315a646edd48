# config.py

import os
import re
import logging
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("PORT", "SECRET", "DEPLOY_COMMAND", "MOUNT_PATH", "ENDPOINTS")
DEFAULT_DEPLOY_TIMEOUT = 600.0


class ConfigError(Exception):
    """Raised when one or more required settings are missing or invalid."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__("Invalid configuration: " + "; ".join(self.missing))


class EmailSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    smtp_server: Optional[str] = None
    smtp_port: int = 587
    use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    sender_email: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)


class NotificationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    slack_webhook_url: str = ""
    email: Optional[EmailSettings] = None


class Config(BaseModel):
    """Process-lifetime settings. Built once by load_config and never mutated."""

    model_config = ConfigDict(frozen=True)

    port: int
    secret: bytes = Field(repr=False)
    deploy_command: str
    mount_path: str = ""
    endpoints: FrozenSet[str]
    branch_by_endpoint: Mapping[str, str]
    host: str = "0.0.0.0"
    debug: bool = False
    deploy_timeout: Optional[float] = DEFAULT_DEPLOY_TIMEOUT
    deploy_in_background: bool = True
    log_db_path: Optional[str] = None
    status_api_key: Optional[str] = Field(default=None, repr=False)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("mount_path")
    @classmethod
    def normalize_mount(cls, value: str) -> str:
        return normalize_mount_path(value)

    @field_validator("branch_by_endpoint")
    @classmethod
    def freeze_branches(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    def required_branch(self, endpoint: str) -> Optional[str]:
        return self.branch_by_endpoint.get(endpoint)


def normalize_mount_path(path: str) -> str:
    """'/', '' and 'hooks/' style values become '' and '/hooks'."""
    path = path.strip().strip("/")
    return f"/{path}" if path else ""


def branch_env_key(endpoint: str) -> str:
    return "BRANCH_" + re.sub(r"[^A-Za-z0-9]", "_", endpoint).upper()


def parse_endpoints(raw: str) -> List[str]:
    seen = []
    for name in raw.split(","):
        name = name.strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_notification_settings(path: str, environ: Optional[Mapping[str, str]] = None) -> NotificationSettings:
    """
    Load Slack and email settings from a YAML file.

    Sensitive email values can be overridden from the environment
    (EMAIL_USERNAME, EMAIL_PASSWORD, SMTP_SERVER, SMTP_PORT, EMAIL_USE_TLS).
    """
    env = os.environ if environ is None else environ

    if not os.path.exists(path):
        logger.error(f"Notifications file '{path}' not found.")
        raise ConfigError([f"NOTIFICATIONS_CONFIG file '{path}' not found"])

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file '{path}': {e}")
        raise ConfigError([f"NOTIFICATIONS_CONFIG file '{path}' is not valid YAML"]) from e

    if not isinstance(data, dict):
        raise ConfigError([f"NOTIFICATIONS_CONFIG file '{path}' must contain a mapping"])
    notifications = data.get("notifications", data) or {}
    email = dict(notifications.get("email") or {})

    email["username"] = env.get("EMAIL_USERNAME", email.get("username"))
    email["password"] = env.get("EMAIL_PASSWORD", email.get("password"))
    email["smtp_server"] = env.get("SMTP_SERVER", email.get("smtp_server"))
    email["smtp_port"] = env.get("SMTP_PORT", email.get("smtp_port", 587))
    email["use_tls"] = _parse_bool(env.get("EMAIL_USE_TLS", str(email.get("use_tls", True))))

    email_enabled = bool(notifications.get("email")) or bool(email["smtp_server"])
    try:
        settings = NotificationSettings(
            slack_webhook_url=notifications.get("slack_webhook_url") or "",
            email=EmailSettings(**email) if email_enabled else None,
        )
    except ValidationError as e:
        logger.error(f"Invalid notification settings in '{path}': {e}")
        raise ConfigError([f"NOTIFICATIONS_CONFIG file '{path}' has invalid settings"]) from e

    if settings.email is not None:
        if not settings.email.username or not settings.email.password:
            logger.warning("Email username or password is missing. Email notifications may fail.")
        if not settings.email.recipients:
            logger.warning("No email recipients configured. Email notifications will not be sent.")
    logger.info(f"Notification settings loaded from '{path}'.")
    return settings


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build the Config from the process environment (or the given mapping).

    Every missing or invalid key is collected first, then reported in a single
    ConfigError so operators can fix them all in one go.
    """
    env = os.environ if environ is None else environ
    problems: List[str] = []

    values: Dict[str, str] = {}
    for key in REQUIRED_KEYS:
        raw = env.get(key, "")
        if not raw.strip():
            problems.append(f"{key} is not set")
        else:
            # The secret is used byte for byte; surrounding whitespace is part of it.
            values[key] = raw if key == "SECRET" else raw.strip()

    port = 0
    if "PORT" in values:
        try:
            port = int(values["PORT"])
            if not 0 < port < 65536:
                raise ValueError(port)
        except ValueError:
            problems.append(f"PORT must be an integer between 1 and 65535, got '{values['PORT']}'")

    endpoints = parse_endpoints(values.get("ENDPOINTS", ""))
    if "ENDPOINTS" in values and not endpoints:
        problems.append("ENDPOINTS does not name any endpoint")

    branches: Dict[str, str] = {}
    endpoint_by_key: Dict[str, str] = {}
    for endpoint in endpoints:
        key = branch_env_key(endpoint)
        if key in endpoint_by_key:
            problems.append(
                f"Endpoints '{endpoint_by_key[key]}' and '{endpoint}' both read their branch from {key}"
            )
            continue
        endpoint_by_key[key] = endpoint
        branch = env.get(key, "").strip()
        if not branch:
            problems.append(f"{key} is not set (required branch for endpoint '{endpoint}')")
        else:
            branches[endpoint] = branch

    deploy_timeout: Optional[float] = DEFAULT_DEPLOY_TIMEOUT
    raw_timeout = env.get("DEPLOY_TIMEOUT", "").strip()
    if raw_timeout:
        try:
            deploy_timeout = float(raw_timeout)
            if deploy_timeout < 0:
                raise ValueError(raw_timeout)
        except ValueError:
            problems.append(f"DEPLOY_TIMEOUT must be a non-negative number, got '{raw_timeout}'")
        else:
            deploy_timeout = deploy_timeout or None

    notifications = NotificationSettings()
    notifications_path = env.get("NOTIFICATIONS_CONFIG", "").strip()
    if notifications_path:
        try:
            notifications = load_notification_settings(notifications_path, env)
        except ConfigError as e:
            problems.extend(e.missing)

    if problems:
        for problem in problems:
            logger.error(f"Configuration problem: {problem}")
        raise ConfigError(problems)

    config = Config(
        port=port,
        secret=values["SECRET"].encode(),
        deploy_command=values["DEPLOY_COMMAND"],
        mount_path=values["MOUNT_PATH"],
        endpoints=frozenset(endpoints),
        branch_by_endpoint=branches,
        host=env.get("HOST", "0.0.0.0").strip() or "0.0.0.0",
        debug=_parse_bool(env.get("DEBUG", "false")),
        deploy_timeout=deploy_timeout,
        deploy_in_background=_parse_bool(env.get("DEPLOY_IN_BACKGROUND", "true")),
        log_db_path=env.get("LOG_DB_PATH", "").strip() or None,
        status_api_key=env.get("STATUS_API_KEY", "").strip() or None,
        notifications=notifications,
    )

    # Log summary of key settings (without sensitive details)
    logger.info(f"Mount path: '{config.mount_path or '/'}'")
    logger.info(f"Endpoints: {', '.join(sorted(config.endpoints))}")
    for endpoint in sorted(config.endpoints):
        logger.info(f"Endpoint '{endpoint}' deploys on branch '{config.branch_by_endpoint[endpoint]}'")
    return config
