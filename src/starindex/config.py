"""Configuration for starindex."""

from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Any, Mapping
import math
import os
import logging
import tempfile
import threading

import certifi
import yaml

from .errors import ConfigurationError

# Module logger - configuration should be done at application level
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    github_token: str
    github_api_url: str
    embedding_backend: str
    openai_api_key: str
    openai_url: str
    embedding_model: str
    embedding_dimension: int
    ollama_url: str
    ollama_api_key: str
    store_backend: str
    db_path: Path
    admin_token: str
    token_budget: int


# Hardcoded defaults (rarely changed)
GITHUB_API_URL_DEFAULT = "https://api.github.com"
OPENAI_EMBEDDINGS_URL_DEFAULT = "https://api.openai.com/v1/embeddings"
OLLAMA_EMBEDDINGS_URL_DEFAULT = "http://localhost:11434/api/embeddings"
EMBEDDING_MODEL_DEFAULT = "text-embedding-3-large"
EMBEDDING_DIMENSION = 3072
OLLAMA_EMBEDDING_MODEL_DEFAULT = "nomic-embed-text"
OLLAMA_EMBEDDING_DIMENSION = 768
REQUEST_TIMEOUT = 60
CHROMA_COLLECTION_NAME = "repositories"
SQLITE_FILENAME = "starindex.sqlite3"
INDEXING_CONFIG_FILENAME = "indexing.yaml"


def ensure_db_writable(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except Exception as exc:  # pragma: no cover - best-effort filesystem
        logger.warning(f"Failed to create database path {path}: {exc}")
        return

    def _chmod_writable(target: Path) -> None:
        if os.access(target, os.W_OK):
            return
        try:
            target.chmod(target.stat().st_mode | 0o200)
        except PermissionError as exc:  # pragma: no cover - best-effort filesystem
            logger.debug(f"Permission update skipped for {target}: {exc}")
        except Exception as exc:  # pragma: no cover - best-effort filesystem
            logger.warning(f"Failed to set write permission on {target}: {exc}")

    _chmod_writable(path)
    for child in path.glob("**/*"):
        _chmod_writable(child)


def _load_yaml_config(path: Path) -> dict[str, Any]:
    """Load YAML configuration from the specified path."""
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except Exception as exc:  # pragma: no cover - config parsing
        raise RuntimeError(f"Failed to load YAML config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise RuntimeError(f"YAML config at {path} must be a mapping of keys.")
    return data


def _flatten(raw: dict[str, Any]) -> dict[str, Any]:
    nested = raw.get("settings", {}) if isinstance(raw.get("settings"), dict) else {}
    return {**raw, **nested}


def _int_value(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer configuration value {value!r}, using {default}")
        return default


def load_settings(config_path: Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables, falling back to the YAML file."""
    env = os.environ if environ is None else environ
    path = config_path or Path(env.get("STARINDEX_CONFIG_PATH", "./starindex.yaml"))
    data = _flatten(_load_yaml_config(path))

    def read(env_name: str, key: str, default: Any = None) -> Any:
        env_value = env.get(env_name)
        if env_value is not None:
            return env_value
        return data.get(key, default)

    backend = str(read("STARINDEX_EMBEDDING_BACKEND", "embedding_backend", "openai")).lower()
    if backend == "ollama":
        model_default, dimension_default = OLLAMA_EMBEDDING_MODEL_DEFAULT, OLLAMA_EMBEDDING_DIMENSION
    else:
        model_default, dimension_default = EMBEDDING_MODEL_DEFAULT, EMBEDDING_DIMENSION

    return Settings(
        github_token=str(read("STARINDEX_GITHUB_TOKEN", "github_token", "")).strip(),
        github_api_url=str(read("STARINDEX_GITHUB_API_URL", "github_api_url", GITHUB_API_URL_DEFAULT)),
        embedding_backend=backend,
        openai_api_key=str(read("STARINDEX_OPENAI_API_KEY", "openai_api_key", "")).strip(),
        openai_url=str(read("STARINDEX_OPENAI_URL", "openai_url", OPENAI_EMBEDDINGS_URL_DEFAULT)),
        embedding_model=str(read("STARINDEX_EMBEDDING_MODEL", "embedding_model", model_default)),
        embedding_dimension=_int_value(
            read("STARINDEX_EMBEDDING_DIMENSION", "embedding_dimension", dimension_default),
            dimension_default,
        ),
        ollama_url=str(read("STARINDEX_OLLAMA_URL", "ollama_url", OLLAMA_EMBEDDINGS_URL_DEFAULT)),
        ollama_api_key=str(read("STARINDEX_OLLAMA_API_KEY", "ollama_api_key", "")),
        store_backend=str(read("STARINDEX_STORE_BACKEND", "store_backend", "sqlite")).lower(),
        db_path=Path(str(read("STARINDEX_DB_PATH", "db_path", "./starindex_db"))).expanduser(),
        admin_token=str(read("STARINDEX_ADMIN_TOKEN", "admin_token", "")),
        token_budget=_int_value(read("STARINDEX_TOKEN_BUDGET", "token_budget", 6000), 6000),
    )


def require(value: str, env_name: str, key: str) -> str:
    if not value or not value.strip():
        raise ConfigurationError(
            f"Required configuration '{key}' is not set. Provide {env_name} "
            f"environment variable or set '{key}' in the YAML config."
        )
    return value.strip()


settings = load_settings()


_verify_bundle: str | None = None


def get_verify() -> str | bool:
    """``verify=`` argument for outbound requests, honouring STARINDEX_CA_CERT."""
    global _verify_bundle
    ca_path = os.getenv("STARINDEX_CA_CERT", "").strip()
    if not ca_path:
        return True
    if _verify_bundle:
        return _verify_bundle
    try:
        with open(certifi.where(), "rb") as base_handle, open(ca_path, "rb") as ca_handle:
            bundle = base_handle.read() + b"\n" + ca_handle.read()
        tmp = tempfile.NamedTemporaryFile(prefix="starindex-ca-", suffix=".crt", delete=False)
        tmp.write(bundle)
        tmp.flush()
        tmp.close()
        _verify_bundle = tmp.name
        return _verify_bundle
    except Exception as exc:  # pragma: no cover - best-effort TLS setup
        logger.warning(f"Failed to build CA bundle: {exc}")
        return ca_path


# -------- Indexing config -------- #


@dataclass(frozen=True)
class AppConfig:
    batch_size: int = 5
    max_retries: int = 5
    page_size: int = 30


CONFIG_LIMITS: dict[str, tuple[int, int]] = {
    "batch_size": (1, 50),
    "max_retries": (1, 10),
    "page_size": (1, 100),
}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def validate_config(changes: Mapping[str, Any], current: AppConfig) -> AppConfig:
    """Apply ``changes`` to ``current``: numbers are clamped, anything else ignored."""
    updates: dict[str, int] = {}
    for name, (low, high) in CONFIG_LIMITS.items():
        if name not in changes:
            continue
        number = _as_number(changes[name])
        if number is None:
            logger.debug(f"Ignoring non-numeric value for {name}: {changes[name]!r}")
            continue
        updates[name] = int(min(max(number, low), high))
    return replace(current, **updates)


class ConfigManager:
    """Holds the indexing config and persists it as YAML after every update."""

    def __init__(self, path: Path | None = None, defaults: AppConfig | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._config = defaults or AppConfig()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            logger.debug("No stored indexing config found, using defaults")
            return
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                stored = yaml.safe_load(handle)
        except Exception as exc:
            logger.error(f"Error loading indexing config from {self.path}: {exc}")
            return
        if not isinstance(stored, dict) or not stored:
            logger.warning(f"Invalid stored config format in {self.path}, using defaults")
            return
        self._config = validate_config(stored, self._config)

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(asdict(self._config), handle, sort_keys=False)
        except Exception as exc:
            logger.error(f"Error saving indexing config to {self.path}: {exc}")

    @property
    def config(self) -> AppConfig:
        return self._config

    def update(self, changes: Mapping[str, Any] | None = None, **kwargs: Any) -> AppConfig:
        merged = {**(changes or {}), **kwargs}
        with self._lock:
            self._config = validate_config(merged, self._config)
            self._save()
            return self._config
