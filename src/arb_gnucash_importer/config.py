"""Configuration loader and validation for importer settings."""

from pathlib import Path
from typing import Any, Literal, Optional
import json
import logging
import os
import tomllib

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .utils.addresses import coerce_address, is_address, normalize_address
from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "ARBISCAN_API_KEY"
API_URL_ENV_VAR = "ARBISCAN_API_URL"
DEFAULT_CONFIG_FILE = Path("config.yml")


class ApiConfig(BaseModel):
    """Explorer API connection settings."""

    url: str = "https://api.arbiscan.io/api"
    api_key: Optional[str] = None
    # Set for the Etherscan V2 multichain endpoint (Arbitrum One is 42161)
    chain_id: Optional[int] = None
    page_size: int = Field(default=1000, ge=1, le=10000)
    timeout_seconds: float = Field(default=30.0, gt=0)


class FetchConfig(BaseModel):
    """Fetcher concurrency, rate limiting and retry settings."""

    concurrency: int = Field(default=4, ge=1)
    requests_per_second: float = Field(default=5.0, gt=0)
    burst: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    start_block: int = Field(default=0, ge=0)
    end_block: Optional[int] = Field(default=None, ge=0)
    # Maximum transaction hashes held while waiting for a parent transaction
    pending_capacity: int = Field(default=10000, ge=1)


class MappingsConfig(BaseModel):
    """Address label and category mapping files, in load order."""

    label_files: list[str] = Field(default_factory=list)
    category_files: list[str] = Field(default_factory=list)


class LedgerConfig(BaseModel):
    """Ledger entry construction settings."""

    native_symbol: str = "ETH"
    native_decimals: int = 18
    gas_attribution: Literal["sender", "any_tracked"] = "sender"
    asset_account_template: str = "Assets:Arbitrum:{name}"
    gas_account: str = "Expenses:Fees:Gas"
    uncategorized_income_account: str = "Income:Uncategorized"
    uncategorized_expense_account: str = "Expenses:Uncategorized"
    skip_zero_value: bool = True
    only_known_tokens: bool = False
    # Extra token contract -> symbol entries, merged over the built-in table
    known_tokens: dict[str, str] = Field(default_factory=dict)

    @field_validator("known_tokens", mode="before")
    @classmethod
    def _normalize_token_addresses(cls, value: Any) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for address, symbol in (value or {}).items():
            address = coerce_address(address)
            if not is_address(address):
                raise ValueError(f"invalid token contract address: {address}")
            normalized[normalize_address(address)] = symbol
        return normalized


class ExportConfig(BaseModel):
    """Export file settings."""

    format: Literal["csv", "json"] = "csv"
    date_format: str = "%Y-%m-%d"
    filename_template: str = "arbitrum_export_{date}.{ext}"
    state_file: Optional[str] = None


class PricingConfig(BaseModel):
    """Optional daily USD price lookup."""

    enabled: bool = False
    cache_file: str = "prices.json"


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


class ImporterConfig(BaseModel):
    """Main configuration model for the importer."""

    addresses: list[str] = Field(default_factory=list)
    api: ApiConfig = Field(default_factory=ApiConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    mappings: MappingsConfig = Field(default_factory=MappingsConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_file_path: Optional[str] = None

    @field_validator("addresses", mode="before")
    @classmethod
    def _validate_addresses(cls, value: Any) -> list[str]:
        normalized: list[str] = []
        for address in value or []:
            address = coerce_address(address)
            if not is_address(address):
                raise ValueError(f"invalid address: {address}")
            address = normalize_address(address)
            if address not in normalized:
                normalized.append(address)
        return normalized

    def require_api_key(self) -> str:
        """Return the API key or raise ConfigurationError if none is set."""
        if not self.api.api_key:
            raise ConfigurationError(
                f"No explorer API key configured: set {API_KEY_ENV_VAR} "
                "or api.api_key in the config file"
            )
        return self.api.api_key


def get_default_config() -> dict[str, Any]:
    """Return the default configuration as a dictionary."""
    return {
        "addresses": [],
        "api": {
            "url": "https://api.arbiscan.io/api",
            "api_key": None,
            "chain_id": None,
            "page_size": 1000,
            "timeout_seconds": 30.0,
        },
        "fetch": {
            "concurrency": 4,
            "requests_per_second": 5.0,
            "burst": 5,
            "max_attempts": 5,
            "backoff_base_seconds": 1.0,
            "backoff_max_seconds": 30.0,
            "start_block": 0,
            "end_block": None,
            "pending_capacity": 10000,
        },
        "mappings": {
            "label_files": [],
            "category_files": [],
        },
        "ledger": {
            "native_symbol": "ETH",
            "native_decimals": 18,
            "gas_attribution": "sender",
            "asset_account_template": "Assets:Arbitrum:{name}",
            "gas_account": "Expenses:Fees:Gas",
            "uncategorized_income_account": "Income:Uncategorized",
            "uncategorized_expense_account": "Expenses:Uncategorized",
            "skip_zero_value": True,
            "only_known_tokens": False,
            "known_tokens": {},
        },
        "export": {
            "format": "csv",
            "date_format": "%Y-%m-%d",
            "filename_template": "arbitrum_export_{date}.{ext}",
            "state_file": None,
        },
        "pricing": {
            "enabled": False,
            "cache_file": "prices.json",
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None,
        },
    }


def read_structured_file(path: Path) -> Any:
    """
    Read a YAML, JSON or TOML document, choosing the format by extension.

    Unknown extensions are read as YAML, which also accepts JSON.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with open(path, "rb") as f:
                return tomllib.load(f)
        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read {path}: {e}") from e


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> ImporterConfig:
    """
    Load configuration from a file and the environment, or use defaults.

    Precedence, lowest to highest: built-in defaults, the config file,
    environment variables. An environment variable that is set but empty
    is ignored.

    Args:
        config_path: Path to a YAML/JSON/TOML configuration file (optional).
            When omitted, ``config.yml`` in the working directory is used if
            present.
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        ImporterConfig object with loaded or default settings

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    environ = os.environ if environ is None else environ
    config_dict = get_default_config()

    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        logger.info(f"Loading configuration from: {config_path}")
        user_config = read_structured_file(config_path) or {}
        if not isinstance(user_config, dict):
            raise ConfigurationError(
                f"Configuration file {config_path} must contain a mapping"
            )

        config_dict = _deep_merge(config_dict, user_config)
        for section, default in get_default_config().items():
            if isinstance(default, dict) and not isinstance(config_dict.get(section), dict):
                raise ConfigurationError(
                    f"Section '{section}' in {config_path} must be a mapping"
                )
        config_dict["config_file_path"] = str(config_path)
    else:
        logger.info("Using default configuration")

    env_key = environ.get(API_KEY_ENV_VAR)
    if env_key:
        if config_dict["api"].get("api_key"):
            logger.debug(f"{API_KEY_ENV_VAR} overrides api.api_key from the config file")
        config_dict["api"]["api_key"] = env_key

    env_url = environ.get(API_URL_ENV_VAR)
    if env_url:
        config_dict["api"]["url"] = env_url

    try:
        return ImporterConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def generate_default_config(output_path: Path) -> None:
    """
    Generate a default configuration file.

    Args:
        output_path: Path to write the configuration file
    """
    config_dict = get_default_config()

    yaml_content = f"""# Arbitrum to GnuCash importer configuration
# Generated configuration file - customize as needed.
# The API key may also be supplied through {API_KEY_ENV_VAR}, which takes
# precedence over api.api_key below.

"""
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        f.write(yaml_content)

    logger.info(f"Generated configuration file: {output_path}")
