# Huntly — configuration
# Override via config.yaml (or --config / HUNTLY_CONFIG) and HUNTLY_* env vars.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

MIN_BCRYPT_ROUNDS = 10

ENV_OVERRIDES = {
    "HUNTLY_JWT_SECRET": "jwt_secret",
    "HUNTLY_DB": "db_path",
    "HUNTLY_COOKIE_SECURE": "cookie_secure",
    "HUNTLY_LOG_LEVEL": "log_level",
}


@dataclass
class Config:
    """Runtime configuration for the CRM server."""

    # Storage
    db_path: str = "~/.local/share/huntly/huntly.db"

    # Sessions
    jwt_secret: str = ""
    session_days: int = 7
    cookie_name: str = "auth-token"
    cookie_secure: bool = False

    # API keys
    api_key_header: str = "X-API-Key"

    # Passwords
    bcrypt_rounds: int = MIN_BCRYPT_ROUNDS

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in the database path."""
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self) -> "Config":
        """Refuse to start without a signing secret or with a weak hash cost."""
        if not self.jwt_secret:
            raise ConfigError(
                "jwt_secret is not set.\n"
                "Set it:  export HUNTLY_JWT_SECRET=$(openssl rand -hex 32)"
            )
        if self.bcrypt_rounds < MIN_BCRYPT_ROUNDS:
            raise ConfigError(f"bcrypt_rounds must be >= {MIN_BCRYPT_ROUNDS}")
        if self.session_days <= 0:
            raise ConfigError("session_days must be positive")
        return self

    def apply_env(self, environ=None):
        environ = os.environ if environ is None else environ
        for var, attr in ENV_OVERRIDES.items():
            if var not in environ:
                continue
            value = environ[var]
            if attr == "cookie_secure":
                value = value.strip().lower() in ("1", "true", "yes", "on")
            setattr(self, attr, value)

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, falling back to defaults, then env overrides."""
        environ = os.environ if environ is None else environ
        cfg_path = Path(path or environ.get("HUNTLY_CONFIG") or CONFIG_PATH)
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
