from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/server-restore/restore.yaml")


class SecretRef(BaseModel):
    """Reference to a secret stored in an environment variable or file."""

    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.env:
            value = os.getenv(self.env, "").strip()
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip() or None
        return None

    def describe(self) -> str:
        if self.env:
            return self.env
        if self.file:
            return str(self.file)
        return "<unset>"


def _env_override(env_name: Optional[str], fallback: Optional[str]) -> Optional[str]:
    if env_name:
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return fallback


# --- Backends ----------------------------------------------------------------


def _validate_pattern(value: str) -> str:
    try:
        re.compile(value)
    except re.error as exc:
        raise ValueError(f"Invalid file_pattern '{value}': {exc}") from exc
    return value


class GoogleDriveConfig(BaseModel):
    folder_id: Optional[str] = None
    folder_id_env: Optional[str] = "GOOGLE_DRIVE_FOLDER_ID"
    client_id: SecretRef = SecretRef(env="GOOGLE_CLIENT_ID")
    client_secret: SecretRef = SecretRef(env="GOOGLE_CLIENT_SECRET")
    refresh_token: SecretRef = SecretRef(env="GOOGLE_REFRESH_TOKEN")
    token_url: str = "https://oauth2.googleapis.com/token"
    api_url: str = "https://www.googleapis.com/drive/v3"
    file_pattern: str = r"n8n_.*backup.*\.tar\.gz"
    page_size: int = 100

    @field_validator("file_pattern")
    @classmethod
    def _compile_pattern(cls, value: str) -> str:
        return _validate_pattern(value)

    def resolved_folder_id(self) -> Optional[str]:
        return _env_override(self.folder_id_env, self.folder_id)


class GitHubConfig(BaseModel):
    repository: Optional[str] = Field(default=None, description="owner/repo holding the backups.")
    repository_env: Optional[str] = "GITHUB_REPO"
    branch: str = "main"
    branch_env: Optional[str] = "GITHUB_BRANCH"
    path: str = ""
    token: SecretRef = SecretRef(env="GITHUB_PAT")
    fallback_token: SecretRef = SecretRef(env="GITHUB_TOKEN")
    api_url: str = "https://api.github.com"
    file_pattern: str = r"n8n_backup.*\.tar\.gz"
    max_workers: int = 4

    @field_validator("file_pattern")
    @classmethod
    def _compile_pattern(cls, value: str) -> str:
        return _validate_pattern(value)

    @field_validator("max_workers")
    @classmethod
    def _positive_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_workers must be at least 1")
        return value

    def resolved_repository(self) -> Optional[str]:
        return _env_override(self.repository_env, self.repository)

    def resolved_branch(self) -> str:
        return _env_override(self.branch_env, self.branch) or "main"


# --- Restore layouts ---------------------------------------------------------


ServiceRole = Literal["database", "application", "proxy", "other"]


class ServiceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    role: ServiceRole = "other"


class CommandSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str
    when_present: Optional[str] = Field(
        default=None, description="Only run when this path exists in the extracted backup."
    )
    required: bool = False


def _validate_relative(value: str) -> str:
    path = PurePosixPath(value.strip().lstrip("/"))
    if not path.parts or ".." in path.parts:
        raise ValueError(f"Invalid restore path '{value}'")
    return str(path)


class LayoutConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    allow_list: List[str]
    services: List[ServiceSpec]
    commands: List[CommandSpec] = Field(default_factory=list)
    manifest_path: str = "root/manual-packages.txt"
    install_base_packages: bool = True
    # `systemctl enable` before the restarts, `systemctl is-active` after them; both optional.
    enable_services: bool = True
    verify_services: bool = True

    @field_validator("allow_list")
    @classmethod
    def _normalize_allow_list(cls, value: List[str]) -> List[str]:
        return [_validate_relative(item) for item in value]

    @field_validator("manifest_path")
    @classmethod
    def _normalize_manifest_path(cls, value: str) -> str:
        return _validate_relative(value)

    @field_validator("commands")
    @classmethod
    def _normalize_when_present(cls, value: List[CommandSpec]) -> List[CommandSpec]:
        return [
            spec.model_copy(update={"when_present": _validate_relative(spec.when_present)})
            if spec.when_present
            else spec
            for spec in value
        ]


DEFAULT_SERVICES = [
    ServiceSpec(name="postgresql", role="database"),
    ServiceSpec(name="redis-server", role="database"),
    ServiceSpec(name="n8n", role="application"),
    ServiceSpec(name="nginx", role="proxy"),
]

NETPLAN_APPLY = CommandSpec(command="netplan apply", when_present="etc/netplan")
NGINX_CONFIG_TEST = CommandSpec(command="nginx -t", when_present="etc/nginx", required=True)

MINIMAL_LAYOUT = LayoutConfig(
    allow_list=["etc/nginx", "etc/netplan", "root/.n8n", "root/.env"],
    services=DEFAULT_SERVICES,
    commands=[NETPLAN_APPLY, NGINX_CONFIG_TEST],
)

FULL_LAYOUT = LayoutConfig(
    allow_list=["etc/nginx", "etc/netplan", "etc/systemd/system", "root/.n8n", "root/.env"],
    services=DEFAULT_SERVICES,
    commands=[
        NETPLAN_APPLY,
        CommandSpec(command="systemctl daemon-reload", when_present="etc/systemd/system", required=True),
        NGINX_CONFIG_TEST,
    ],
)


class BaseSetupConfig(BaseModel):
    update_command: Optional[str] = "apt-get update"
    packages: List[str] = Field(
        default_factory=lambda: [
            "curl",
            "wget",
            "jq",
            "tar",
            "gzip",
            "git",
            "nginx",
            "postgresql",
            "postgresql-contrib",
            "nodejs",
            "npm",
            "redis-server",
            "htop",
            "nano",
            "vim",
            "unzip",
            "software-properties-common",
            "apt-transport-https",
            "ca-certificates",
            "gnupg",
            "lsb-release",
        ]
    )
    commands: List[CommandSpec] = Field(default_factory=lambda: [CommandSpec(command="npm install -g n8n")])


# --- Runtime -----------------------------------------------------------------


class TimeoutsConfig(BaseModel):
    http: float = 30.0
    download: float = 300.0
    package: float = 600.0
    service: float = 120.0
    command: float = 300.0

    @model_validator(mode="after")
    def _require_positive(self) -> "TimeoutsConfig":
        for name, value in self.model_dump().items():
            if value <= 0:
                raise ValueError(f"Timeout '{name}' must be positive.")
        return self


class StagingConfig(BaseModel):
    root: Path = Path("/var/tmp/server-restore")
    keep: bool = False

    @field_validator("root")
    @classmethod
    def _expand_root(cls, value: Path) -> Path:
        return value.expanduser()


class RestoreConfig(BaseModel):
    google_drive: GoogleDriveConfig = GoogleDriveConfig()
    github: GitHubConfig = GitHubConfig()
    layouts: Dict[str, LayoutConfig] = Field(
        default_factory=lambda: {"minimal": MINIMAL_LAYOUT, "full": FULL_LAYOUT}
    )
    base_setup: BaseSetupConfig = BaseSetupConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    staging: StagingConfig = StagingConfig()
    log_file: Optional[Path] = Path("/var/log/server_restore.log")

    @model_validator(mode="after")
    def _default_layouts(self) -> "RestoreConfig":
        self.layouts.setdefault("minimal", MINIMAL_LAYOUT)
        self.layouts.setdefault("full", FULL_LAYOUT)
        return self


def load_config(path: Path, *, required: bool = True) -> RestoreConfig:
    """Load configuration from YAML; falls back to defaults when the file is optional and absent."""
    if not path.exists():
        if required:
            raise ConfigurationError(f"Configuration file not found: {path}")
        return RestoreConfig()

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration {path} must be a mapping")

    try:
        return RestoreConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
