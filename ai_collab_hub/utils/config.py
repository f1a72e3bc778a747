"""
Configuration Management for AI Collaboration Hub

Handles configuration loading, validation, and environment setup.
The resulting HubConfig is built once at startup and handed to each
component constructor.
"""

import os
import json
import yaml
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

class StorageConfig(BaseModel):
    """Storage backend configuration."""
    primary_db: str = "hub.db"
    enable_memory_cache: bool = True
    redis_url: Optional[str] = None  # e.g. redis://localhost:6379/0
    enable_graph: bool = True
    enable_vector: bool = True
    vector_dimensions: int = 256
    health_check_interval: int = 15  # seconds
    cache_default_ttl: int = 300     # seconds

class KnowledgeGraphConfig(BaseModel):
    """Knowledge graph configuration."""
    search_cache_ttl: int = 30  # seconds
    default_search_limit: int = 10

class MessageHubConfig(BaseModel):
    """Message hub configuration."""
    retention_days: int = 7
    max_messages: int = 10000
    eviction_interval: int = 60     # seconds between lazy eviction passes
    stats_window: int = 86400       # seconds

class ConsensusConfig(BaseModel):
    """Consensus coordinator configuration."""
    default_timeout: int = 300      # seconds
    sweep_interval: int = 5         # seconds
    default_mode: str = "plurality"

class AutonomousConfig(BaseModel):
    """Autonomous scheduler configuration."""
    default_tokens_per_day: int = 100000
    action_costs: Dict[str, int] = Field(default_factory=lambda: {
        "send_message": 150,
        "broadcast": 150,
        "record_observation": 200,
        "get_messages": 50,
        "status_update": 100,
        "log": 10,
    })
    default_action_cost: int = 50
    reset_check_interval: int = 60  # seconds

class ProviderConfig(BaseModel):
    """A single AI provider."""
    name: str
    kind: str = "openai"            # openai | ollama | echo
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout: float = 30.0

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env)
        return None

class RouterConfig(BaseModel):
    """AI request router configuration."""
    providers: List[ProviderConfig] = Field(default_factory=lambda: [
        ProviderConfig(name="echo", kind="echo", model="echo"),
    ])
    failure_threshold: int = 3
    failure_window: int = 60        # seconds
    cooldown: int = 30              # seconds
    call_timeout: float = 30.0      # seconds
    max_workers: int = 8

class ServerConfig(BaseModel):
    """HTTP/WebSocket transport configuration."""
    host: str = "0.0.0.0"
    port: int = 6174

class MonitoringConfig(BaseModel):
    """Monitoring configuration."""
    log_level: str = "INFO"

class HubConfig(BaseModel):
    """Main configuration for AI Collaboration Hub."""

    # Data directory for the primary database and logs
    data_dir: str = "./data"

    # Component configurations
    storage: StorageConfig = Field(default_factory=StorageConfig)
    knowledge_graph: KnowledgeGraphConfig = Field(default_factory=KnowledgeGraphConfig)
    message_hub: MessageHubConfig = Field(default_factory=MessageHubConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    autonomous: AutonomousConfig = Field(default_factory=AutonomousConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    # Environment
    environment: str = "development"

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v):
        """Ensure data directory exists."""
        Path(v).mkdir(parents=True, exist_ok=True)
        return v

    def get_db_path(self, db_name: str) -> str:
        """Get full path for a database file."""
        return str(Path(self.data_dir) / db_name)


ENV_PREFIX = "AI_COLLAB_"

# Short names for the settings people override most often.
ENV_ALIASES = {
    "DATA_DIR": ("data_dir",),
    "ENVIRONMENT": ("environment",),
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "LOG_LEVEL": ("monitoring", "log_level"),
    "REDIS_URL": ("storage", "redis_url"),
    "RETENTION_DAYS": ("message_hub", "retention_days"),
    "TOKENS_PER_DAY": ("autonomous", "default_tokens_per_day"),
    "PROVIDER_COOLDOWN": ("router", "cooldown"),
}


class ConfigManager:
    """
    Builds a HubConfig from a file, a .env file and the environment.

    Later sources win: file values are overridden by ``AI_COLLAB_*``
    variables. Besides the aliases above, any nested field can be set
    as ``AI_COLLAB_<SECTION>__<FIELD>``, e.g. ``AI_COLLAB_ROUTER__CALL_TIMEOUT``.
    Values stay strings and are coerced by the pydantic models.
    """

    def __init__(self, config_path: Optional[str] = None,
                 env_file: Optional[str] = None):
        self.config_path = config_path
        self.env_file = env_file or ".env"
        self.config: Optional[HubConfig] = None

    def load_config(self) -> HubConfig:
        """Load, merge and validate the configuration."""
        if Path(self.env_file).is_file():
            load_dotenv(self.env_file)

        data = self._read_file(self.config_path) if self.config_path else {}
        for path, value in self._env_overrides(os.environ):
            self._assign(data, path, value)

        self.config = HubConfig.model_validate(data)
        logger.info(f"Configuration loaded: {self.config.environment} environment")
        return self.config

    @staticmethod
    def _read_file(config_path: str) -> Dict[str, Any]:
        path = Path(config_path)
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        suffix = path.suffix.lower()
        text = path.read_text()
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must hold a mapping")
        return data

    @staticmethod
    def _env_overrides(environ: Mapping[str, str]) -> List[Tuple[Tuple[str, ...], str]]:
        overrides = []
        for name, value in sorted(environ.items()):
            if not name.startswith(ENV_PREFIX):
                continue
            suffix = name[len(ENV_PREFIX):]
            if suffix in ENV_ALIASES:
                overrides.append((ENV_ALIASES[suffix], value))
            elif "__" in suffix:
                path = tuple(part.lower() for part in suffix.split("__") if part)
                if len(path) > 1 and path[0] in HubConfig.model_fields:
                    overrides.append((path, value))
        return overrides

    @staticmethod
    def _assign(data: Dict[str, Any], path: Tuple[str, ...], value: str) -> None:
        node = data
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[path[-1]] = value


def load_config(config_path: Optional[str] = None,
                env_file: Optional[str] = None) -> HubConfig:
    """Load configuration with custom paths."""
    return ConfigManager(config_path, env_file).load_config()


def write_config(config: HubConfig, output_path: str) -> Path:
    """Write a configuration as YAML, or JSON for a .json path."""
    path = Path(output_path)
    data = config.model_dump(mode="json")
    with open(path, "w") as f:
        if path.suffix.lower() == ".json":
            json.dump(data, f, indent=2)
        else:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    logger.info(f"Configuration written to {path}")
    return path


def setup_logging(config: HubConfig) -> None:
    """Send log records to the console and to <data_dir>/logs."""
    level = getattr(logging, config.monitoring.log_level.upper(), logging.INFO)

    log_dir = Path(config.data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / "ai_collab_hub.log"),
        ],
    )
    # the HTTP access log is noisy at INFO
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))

    logger.info(f"Logging configured at {config.monitoring.log_level} level")
