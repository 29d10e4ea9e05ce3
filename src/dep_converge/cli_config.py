"""
Configuration management for dep-converge.

Settings for graph building, repositories, relocation, security limits and
logging, loaded from a config file and overridden from the environment.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console
from rich.markup import escape

console = Console(stderr=True, emoji=False)

VALID_SCOPES = ["compile", "provided", "runtime", "test", "system"]


@dataclass
class ResolveConfig:
    """Graph building and resolution configuration."""

    max_concurrent: int = 16
    fetch_timeout_seconds: float = 30.0
    scopes: List[str] = field(
        default_factory=lambda: ["compile", "runtime", "provided", "system"]
    )
    fail_on_conflict: bool = False
    output_format: str = "console"
    quiet: bool = False
    verbose: bool = False


@dataclass
class RepositoryConfig:
    """Manifest repository configuration."""

    local_paths: List[str] = field(
        default_factory=lambda: [str(Path.home() / ".m2" / "repository")]
    )
    remote_url: Optional[str] = None
    user_agent: str = "dep-converge/1.0.0"
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    rate_limit: float = 20.0


@dataclass
class RelocationConfig:
    """Artifact relocation configuration."""

    rewrite_string_literals: bool = True
    rewrite_services: bool = True
    max_workers: int = 4
    default_prefix: str = "shaded"


@dataclass
class SecurityConfig:
    """Input validation limits."""

    max_file_size_mb: int = 10
    allowed_file_extensions: List[str] = field(
        default_factory=lambda: [".xml", ".pom", ".json", ".yaml", ".yml", ".toml"]
    )

    @property
    def max_file_size_bytes(self) -> int:
        """Convert MB to bytes for internal use."""
        return self.max_file_size_mb * 1024 * 1024


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = "WARNING"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    enable_json: bool = True


@dataclass
class ComprehensiveConfig:
    """Main configuration containing all subsections."""

    resolve: ResolveConfig = field(default_factory=ResolveConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    relocation: RelocationConfig = field(default_factory=RelocationConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_global_config: Optional[ComprehensiveConfig] = None

_SECTIONS = ("resolve", "repository", "relocation", "security", "logging")


def validate_config_values(config: ComprehensiveConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Args:
        config: Configuration to validate

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    if config.resolve.max_concurrent <= 0:
        errors.append("resolve.max_concurrent must be positive")
    if config.resolve.fetch_timeout_seconds <= 0:
        errors.append("resolve.fetch_timeout_seconds must be positive")
    unknown_scopes = [s for s in config.resolve.scopes if s not in VALID_SCOPES]
    if unknown_scopes:
        errors.append(f"resolve.scopes contains unknown scopes: {unknown_scopes}")
    if config.resolve.output_format not in ("console", "json"):
        errors.append("resolve.output_format must be 'console' or 'json'")

    if not config.repository.local_paths and not config.repository.remote_url:
        errors.append("repository.local_paths must not be empty without a remote_url")
    if config.repository.connect_timeout <= 0:
        errors.append("repository.connect_timeout must be positive")
    if config.repository.read_timeout <= 0:
        errors.append("repository.read_timeout must be positive")
    if config.repository.rate_limit <= 0:
        errors.append("repository.rate_limit must be positive")

    if config.relocation.max_workers <= 0:
        errors.append("relocation.max_workers must be positive")
    if not config.relocation.default_prefix.strip():
        errors.append("relocation.default_prefix must not be empty")

    if config.security.max_file_size_mb <= 0:
        errors.append("security.max_file_size_mb must be positive")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load config from a JSON or YAML file."""
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                return yaml.safe_load(f)
            elif config_path.suffix.lower() == ".json":
                return json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(
            f"⚠️  Error loading config from {escape(str(config_path))}: {escape(str(e))}",
            style="yellow",
        )

    return None


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / ".dep-converge.json",
        Path.cwd() / ".dep-converge.yaml",
        Path.cwd() / ".dep-converge.yml",
        Path.home() / ".config" / "dep-converge" / "config.json",
        Path.home() / ".config" / "dep-converge" / "config.yaml",
    ]

    for location in locations:
        if location.exists():
            return location

    return None


def load_environment_overrides(config: ComprehensiveConfig) -> None:
    """Apply DEP_CONVERGE_* environment variable overrides."""

    def get_env_bool(key: str, default: bool = False) -> bool:
        value = os.environ.get(key, "").lower()
        return value in ["true", "1", "yes", "on"] if value else default

    def get_env_int(key: str) -> Optional[int]:
        try:
            return int(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid integer value for {key}, using default", style="yellow")
            return None

    def get_env_float(key: str) -> Optional[float]:
        try:
            return float(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid float value for {key}, using default", style="yellow")
            return None

    if max_concurrent := get_env_int("DEP_CONVERGE_MAX_CONCURRENT"):
        config.resolve.max_concurrent = max_concurrent
    if timeout := get_env_float("DEP_CONVERGE_FETCH_TIMEOUT"):
        config.resolve.fetch_timeout_seconds = timeout
    if scopes := os.environ.get("DEP_CONVERGE_SCOPES"):
        config.resolve.scopes = [s.strip() for s in scopes.split(",") if s.strip()]
    config.resolve.fail_on_conflict = get_env_bool(
        "DEP_CONVERGE_FAIL_ON_CONFLICT", config.resolve.fail_on_conflict
    )

    if local_paths := os.environ.get("DEP_CONVERGE_REPOSITORIES"):
        config.repository.local_paths = [
            p for p in local_paths.split(os.pathsep) if p
        ]
    if remote_url := os.environ.get("DEP_CONVERGE_REMOTE_URL"):
        config.repository.remote_url = remote_url
    if user_agent := os.environ.get("DEP_CONVERGE_USER_AGENT"):
        config.repository.user_agent = user_agent
    if read_timeout := get_env_float("DEP_CONVERGE_READ_TIMEOUT"):
        config.repository.read_timeout = read_timeout

    if max_workers := get_env_int("DEP_CONVERGE_RELOCATION_WORKERS"):
        config.relocation.max_workers = max_workers

    if log_level := os.environ.get("DEP_CONVERGE_LOG_LEVEL"):
        config.logging.log_level = log_level.upper()


def apply_config_section(
    config: Any, section_data: Dict[str, Any], section_name: str
) -> None:
    """Apply configuration from dictionary to config section."""
    for key, value in section_data.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            console.print(
                f"⚠️  Unknown config key in {section_name}: {escape(str(key))}",
                style="yellow",
            )


def load_config() -> ComprehensiveConfig:
    """Load configuration from file and environment."""
    global _global_config

    if _global_config is not None:
        return _global_config

    config = ComprehensiveConfig()

    config_file = find_config_file()
    if config_file:
        file_config = load_config_file(config_file)
        if file_config:
            for section in _SECTIONS:
                if section in file_config:
                    apply_config_section(
                        getattr(config, section), file_config[section], section
                    )

    load_environment_overrides(config)

    validation_errors = validate_config_values(config)
    if validation_errors:
        console.print("⚠️  Configuration validation errors:", style="red")
        for error in validation_errors:
            console.print(f"  • {escape(error)}", style="red")
        console.print("Using default values for invalid settings.", style="yellow")
        config = _restore_defaults(config, validation_errors)

    _global_config = config
    return config


def _restore_defaults(
    config: ComprehensiveConfig, errors: List[str]
) -> ComprehensiveConfig:
    """Reset every field named in a validation error back to its default."""
    defaults = ComprehensiveConfig()
    for error in errors:
        dotted = error.split(" ", 1)[0]
        if "." not in dotted:
            continue
        section, key = dotted.split(".", 1)
        setattr(getattr(config, section), key, getattr(getattr(defaults, section), key))
    return config


def get_config() -> ComprehensiveConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _global_config
    _global_config = None


def create_sample_config() -> str:
    """Generate a sample configuration file with every default."""
    sample = ComprehensiveConfig().to_dict()
    sample["repository"]["remote_url"] = "https://repo1.maven.org/maven2"
    return json.dumps(sample, indent=2)
