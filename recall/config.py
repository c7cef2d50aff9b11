"""
Configuration management for recall stores.

The configuration is stored as a TOML file in the store directory.
It names the embedding and chat providers and holds the tuning
parameters for versioning, retrieval, answering and capture.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "recall.toml"
CONFIG_VERSION = 1

DEFAULT_OLLAMA_BASE = "http://127.0.0.1:11434"
DEFAULT_EMBED_MODEL = "embeddinggemma"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class VersioningConfig:
    max_versions: int = 3
    similarity_threshold: float = 0.98


@dataclass
class SearchConfig:
    """Retrieval weights and stage sizes."""
    top_pages: int = 30
    w_sim: float = 0.75
    w_exact: float = 0.12
    w_title_exact: float = 0.03
    w_token: float = 0.05
    w_recency: float = 0.05
    recency_window_days: float = 30.0
    query_rewrite: bool = False
    rerank: bool = True


@dataclass
class CalibrationConfig:
    w_sim: float = 0.8
    w_llm: float = 0.2

    def normalized(self) -> tuple[float, float]:
        """Weights scaled to sum to 1 (0.5/0.5 when the sum is not positive)."""
        total = self.w_sim + self.w_llm
        if total <= 0:
            return 0.5, 0.5
        return self.w_sim / total, self.w_llm / total


@dataclass
class AskConfig:
    answer_mode: str = "concise"
    top_concise: int = 3
    top_detailed: int = 5
    ctx_concise: int = 1200
    ctx_detailed: int = 2400

    @property
    def detailed(self) -> bool:
        return self.answer_mode == "detailed"


@dataclass
class ToolsConfig:
    enabled: bool = True
    max_steps: int = 2
    timeout: float = 0.0  # seconds; 0 disables the per-call timeout
    max_slice: int = 1200


@dataclass
class CaptureConfig:
    paused: bool = False
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)
    max_attempts: int = 3
    retry_backoff: float = 1.0  # seconds, doubled per attempt


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Provider configurations
    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig(
        "ollama", {"model": DEFAULT_EMBED_MODEL}))
    chat: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))

    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    ask: AskConfig = field(default_factory=AskConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


# Section name -> dataclass attribute on StoreConfig
_SECTIONS = ("versioning", "search", "calibration", "ask", "tools", "capture")


def get_default_store_path() -> Path:
    """Store directory, respecting RECALL_STORE_PATH."""
    env = os.environ.get("RECALL_STORE_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / ".recall"


def _parse_section(cls, data: Optional[dict]):
    """Build a section dataclass from a TOML table, ignoring unknown keys."""
    obj = cls()
    if not data:
        return obj
    for f in fields(cls):
        if f.name in data:
            setattr(obj, f.name, data[f.name])
    return obj


def _section_to_dict(obj) -> dict:
    return {f.name: getattr(obj, f.name) for f in fields(obj)}


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config; provider base URL follows OLLAMA_HOST if set."""
    config = StoreConfig(path=store_path)
    host = os.environ.get("OLLAMA_HOST")
    if host:
        config.embedding.params["base_url"] = host
    return config


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    config = StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=parse_provider(data.get("embedding", {"name": "ollama", "model": DEFAULT_EMBED_MODEL})),
        chat=parse_provider(data.get("chat", {"name": "none"})),
    )
    config.versioning = _parse_section(VersioningConfig, data.get("versioning"))
    config.search = _parse_section(SearchConfig, data.get("search"))
    config.calibration = _parse_section(CalibrationConfig, data.get("calibration"))
    config.ask = _parse_section(AskConfig, data.get("ask"))
    config.tools = _parse_section(ToolsConfig, data.get("tools"))
    config.capture = _parse_section(CaptureConfig, data.get("capture"))
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": provider_to_dict(config.embedding),
        "chat": provider_to_dict(config.chat),
    }
    for name in _SECTIONS:
        data[name] = _section_to_dict(getattr(config, name))

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config


def set_config_value(config: StoreConfig, key: str, value: str) -> None:
    """
    Update a single ``section.name`` setting from a string value.

    The value is coerced to the type of the current setting. Provider
    sections (``embedding``, ``chat``) accept arbitrary parameter names.

    Raises:
        KeyError: If the section or setting is unknown
        ValueError: If the value cannot be coerced
    """
    if "." not in key:
        raise KeyError(f"Expected section.name, got '{key}'")
    section, name = key.split(".", 1)
    if section in ("embedding", "chat"):
        provider: ProviderConfig = getattr(config, section)
        if name == "name":
            provider.name = value
        else:
            provider.params[name] = value
        return
    if section not in _SECTIONS:
        raise KeyError(f"Unknown config section: '{section}'")
    obj = getattr(config, section)
    if not hasattr(obj, name):
        raise KeyError(f"Unknown setting: '{key}'")
    current = getattr(obj, name)
    if isinstance(current, bool):
        lowered = value.strip().lower()
        if lowered not in ("true", "false", "1", "0", "yes", "no", "on", "off"):
            raise ValueError(f"Expected a boolean for {key}, got '{value}'")
        coerced: Any = lowered in ("true", "1", "yes", "on")
    elif isinstance(current, int):
        coerced = int(value)
    elif isinstance(current, float):
        coerced = float(value)
    elif isinstance(current, list):
        coerced = [v.strip().lower() for v in value.split(",") if v.strip()]
    else:
        coerced = value
    setattr(obj, name, coerced)
