"""Connection and publishing settings for publish-confluence."""

from __future__ import annotations

import dataclasses
import os
import tomllib
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError, model_validator

from .errors import ConfigurationError


class ConfluenceCredentials(BaseModel):
    """Connection information for the Confluence REST API.

    Either a personal access ``token`` or an ``email`` and ``api_token`` pair
    must be present.
    """

    base_url: HttpUrl = Field(..., description="Base URL of the Confluence instance")
    token: Optional[str] = Field(None, description="Personal access token sent as a bearer token")
    email: Optional[str] = Field(None, description="Account email associated with the API token")
    api_token: Optional[str] = Field(None, description="API token generated from the Atlassian account")

    @model_validator(mode="after")
    def _require_auth(self) -> "ConfluenceCredentials":
        if not self.token and not (self.email and self.api_token):
            raise ValueError("provide token, or email and api_token")
        return self

    @property
    def url(self) -> str:
        return str(self.base_url).rstrip("/")


class PublishSettings(BaseModel):
    """Tunables of the publishing workflow."""

    fail_fast: bool = Field(True, description="Abort the whole run on the first fatal page error")
    race_attempts: int = Field(3, ge=1, description="Searches after a create reported an existing page")
    race_backoff: float = Field(1.0, ge=0, description="Delay before the first race recovery search")
    conflict_attempts: int = Field(3, ge=1, description="Update attempts when the page version moved")
    request_attempts: int = Field(3, ge=1, description="Attempts for transient HTTP failures")
    timeout: float = Field(30.0, gt=0, description="HTTP timeout in seconds")
    allow_self_signed: bool = Field(False, description="Skip TLS certificate verification")


class PublishConfig(BaseModel):
    """Aggregate configuration for the CLI."""

    credentials: Optional[ConfluenceCredentials] = None
    settings: PublishSettings = Field(default_factory=PublishSettings)


ENV_PREFIX = "CONFLUENCE"
CREDENTIAL_KEYS = ("base_url", "token", "email", "api_token")
DEFAULT_CONFIG_PATHS = (
    Path("publish-confluence.toml"),
    Path.home() / ".config" / "publish-confluence" / "config.toml",
)


@dataclasses.dataclass
class ConfigSource:
    """Result of attempting to resolve configuration data."""

    data: dict
    path: Optional[Path]


def _load_from_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Return credential values found in ``CONFLUENCE_*`` environment variables."""

    values: dict[str, str] = {}
    for key in CREDENTIAL_KEYS:
        value = environ.get(f"{ENV_PREFIX}_{key.upper()}")
        if value:
            values[key] = value
    return values


def _load_toml(path: Path) -> Optional[dict]:
    if not path.is_file():
        return None
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc


def resolve_config(
    explicit_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ConfigSource:
    """Collect raw configuration data in precedence order.

    1. Explicit path provided via CLI argument (must exist).
    2. ``./publish-confluence.toml`` or ``~/.config/publish-confluence/config.toml``.
    3. Environment variables with the ``CONFLUENCE_`` prefix override
       individual credential values of the file.
    """

    environ = os.environ if environ is None else environ
    data: dict = {}
    path: Optional[Path] = None

    if explicit_path is not None:
        loaded = _load_toml(explicit_path)
        if loaded is None:
            raise ConfigurationError(f"Configuration file {explicit_path} does not exist")
        data, path = loaded, explicit_path
    else:
        for candidate in DEFAULT_CONFIG_PATHS:
            loaded = _load_toml(candidate)
            if loaded is not None:
                data, path = loaded, candidate
                break

    env_values = _load_from_env(environ)
    if env_values:
        data = {**data, "credentials": {**data.get("credentials", {}), **env_values}}
    return ConfigSource(data=data, path=path)


def _issues(exc: ValidationError) -> list[str]:
    return [f"- {'.'.join(str(part) for part in issue['loc']) or '<root>'}: {issue['msg']}" for issue in exc.errors()]


def ensure_config(
    *,
    base_url: Optional[str] = None,
    token: Optional[str] = None,
    email: Optional[str] = None,
    api_token: Optional[str] = None,
    fail_fast: Optional[bool] = None,
    allow_self_signed: Optional[bool] = None,
    config_path: Optional[Path] = None,
    require_credentials: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> PublishConfig:
    """Resolve configuration from precedence order and apply explicit CLI options.

    Dry runs pass ``require_credentials=False``; incomplete credentials are
    then dropped instead of reported.
    """

    source = resolve_config(config_path, environ=environ)
    data = dict(source.data)

    overrides = {
        key: value
        for key, value in (("base_url", base_url), ("token", token), ("email", email), ("api_token", api_token))
        if value
    }
    credentials = {**data.get("credentials", {}), **overrides}
    settings = dict(data.get("settings", {}))
    if fail_fast is not None:
        settings["fail_fast"] = fail_fast
    if allow_self_signed is not None:
        settings["allow_self_signed"] = allow_self_signed

    if not credentials.get("base_url") or not (
        credentials.get("token") or (credentials.get("email") and credentials.get("api_token"))
    ):
        if require_credentials:
            raise ConfigurationError(
                "Missing Confluence credentials. Provide CONFLUENCE_BASE_URL and CONFLUENCE_TOKEN "
                "(or CONFLUENCE_EMAIL and CONFLUENCE_API_TOKEN) via CLI options, environment variables "
                "or a configuration file"
            )
        credentials = {}

    try:
        return PublishConfig.model_validate(
            {"credentials": credentials or None, "settings": settings}
        )
    except ValidationError as exc:
        location = f" in {source.path}" if source.path else ""
        raise ConfigurationError(f"Invalid settings{location}", issues=_issues(exc)) from exc
