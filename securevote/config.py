from dataclasses import dataclass, field
import os


def _env(name: str, default: str) -> str:
    return os.getenv(f"SECUREVOTE_{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    data_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "data"))
    database_url: str | None = None
    secrets_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "secrets"))
    # Private store of the election authority's key holder, never served over HTTP
    keystore_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "keys"))
    certs_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "certs"))

    admin_username: str = "admin"
    admin_password: str = "admin"
    access_token_expire_minutes: int = 60 * 8

    engine_key_size: int = 2048
    engine_timeout_seconds: float = 30.0
    auto_provision_keys: bool = True

    log_level: str = "INFO"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{os.path.join(self.data_dir, 'securevote.db')}"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls()
        settings.data_dir = _env("DATA_DIR", settings.data_dir)
        settings.database_url = os.getenv("SECUREVOTE_DATABASE_URL") or None
        settings.secrets_dir = _env("SECRETS_DIR", settings.secrets_dir)
        settings.keystore_dir = _env("KEYSTORE_DIR", settings.keystore_dir)
        settings.certs_dir = _env("CERTS_DIR", settings.certs_dir)
        settings.admin_username = _env("ADMIN_USERNAME", settings.admin_username)
        settings.admin_password = _env("ADMIN_PASSWORD", settings.admin_password)
        settings.access_token_expire_minutes = int(
            _env("ACCESS_TOKEN_EXPIRE_MINUTES", str(settings.access_token_expire_minutes))
        )
        settings.engine_key_size = int(_env("ENGINE_KEY_SIZE", str(settings.engine_key_size)))
        settings.engine_timeout_seconds = float(
            _env("ENGINE_TIMEOUT_SECONDS", str(settings.engine_timeout_seconds))
        )
        settings.auto_provision_keys = _env_bool("AUTO_PROVISION_KEYS", settings.auto_provision_keys)
        settings.log_level = _env("LOG_LEVEL", settings.log_level).upper()
        return settings

    def ensure_dirs(self):
        for path in (self.data_dir, self.secrets_dir, self.keystore_dir, self.certs_dir):
            os.makedirs(path, exist_ok=True)
