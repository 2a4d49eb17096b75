"""Configuration Manager for Endpoint Credentials and Project Layout.

This module loads everything a transfer run needs to know about its
surroundings: the exchange endpoint and its client certificate, where each
resource type lives in the host project, how the cohort is selected and
which record store backs the run.

Security Impact:
    - Certificate material and passphrases are held as SecretStr (never logged)
    - Endpoint URLs must use https; plain http is rejected before any I/O
    - Configuration files with permissive modes produce a warning

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation: ConfigurationError is raised before any record is touched
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from registry_transfer.domain.models import CodingOptions, FormLocation
from registry_transfer.domain.ports import ConfigurationError
from registry_transfer.domain.resource_types import ResourceType

logger = logging.getLogger(__name__)

ENV_PREFIX = "RT_"

# Config key per resource type, in processing order
LOCATION_KEYS = {
    ResourceType.DEMO: "demographics",
    ResourceType.DX: "diagnosis",
    ResourceType.LAB: "lab",
    ResourceType.ENC: "encounter",
    ResourceType.MED: "medication",
    ResourceType.PX: "procedure",
    ResourceType.VITALS: "vitals",
    ResourceType.ALLERGY: "allergy",
}


class EndpointConfig(BaseModel):
    """Exchange endpoint connection settings.

    Certificate material is given either inline (cert_pem/key_pem, written to
    ephemeral files for each run) or as paths to existing PEM files.

    Parameters:
        url: Endpoint base URL (https only)
        cert_pem: Client certificate PEM text (secret)
        key_pem: Client private key PEM text (secret)
        cert_path: Path to an existing client certificate PEM file
        key_path: Path to an existing private key PEM file
        cert_password: Private key passphrase (secret)
        submitting_org: Submitting organization identifier
        identifier_system: Code system of the MR identifier type
        timeout: Per-request timeout in seconds
    """

    url: str = Field(..., description="Endpoint base URL")
    cert_pem: Optional[SecretStr] = Field(None, description="Client certificate PEM (secret)")
    key_pem: Optional[SecretStr] = Field(None, description="Client private key PEM (secret)")
    cert_path: Optional[str] = Field(None, description="Client certificate file")
    key_path: Optional[str] = Field(None, description="Client private key file")
    cert_password: Optional[SecretStr] = Field(None, description="Private key passphrase (secret)")
    submitting_org: str = Field(..., min_length=1, description="Submitting organization identifier")
    identifier_system: str = Field(
        "http://terminology.hl7.org/CodeSystem/v2-0203",
        description="Identifier type code system"
    )
    timeout: float = Field(30.0, gt=0, description="Request timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an https endpoint."""
        v = v.strip()
        if not v.lower().startswith("https://"):
            raise ValueError("Endpoint URL must use the https:// scheme")
        return v.rstrip("/")

    @model_validator(mode='after')
    def require_certificate_material(self) -> 'EndpointConfig':
        """Require a complete certificate/key pair from one source."""
        has_inline = self.cert_pem is not None and self.key_pem is not None
        has_paths = bool(self.cert_path) and bool(self.key_path)
        if not (has_inline or has_paths):
            raise ValueError("Client certificate and key are required (inline PEM or file paths)")
        return self


class ProjectConfig(BaseModel):
    """Where each resource type's rows live in the host project.

    A resource type whose location is unset is feature-disabled. Vital signs
    default to the encounter location.
    """

    demographics: Optional[FormLocation] = None
    diagnosis: Optional[FormLocation] = None
    lab: Optional[FormLocation] = None
    encounter: Optional[FormLocation] = None
    medication: Optional[FormLocation] = None
    procedure: Optional[FormLocation] = None
    vitals: Optional[FormLocation] = None
    allergy: Optional[FormLocation] = None
    local_code_system: str = Field(
        "https://www.stanford.edu",
        description="System URI for local lab component and medication ids"
    )

    def locations(self) -> dict[ResourceType, Optional[FormLocation]]:
        """Map every resource type to its configured location (or None)."""
        located = {resource_type: getattr(self, key) for resource_type, key in LOCATION_KEYS.items()}
        if located[ResourceType.VITALS] is None:
            located[ResourceType.VITALS] = self.encounter
        return located


class CohortConfig(BaseModel):
    """Cohort selection settings."""

    location: FormLocation = Field(..., description="Form holding the enrollment flag")
    enrollment_field: str = Field("registry_enrolled", pattern=r"^[a-z][a-z0-9_]*$")
    study_id_field: str = Field("study_id", pattern=r"^[a-z][a-z0-9_]*$")


class StoreConfig(BaseModel):
    """Record store backend settings.

    Parameters:
        db_type: "duckdb" or "memory"
        db_path: DuckDB database file (":memory:" when unset)
    """

    db_type: str = Field("duckdb", description="Store type (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to DuckDB database file")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported store type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


class ConfigManager:
    """Configuration manager for a transfer deployment.

    Example Usage:
        ```python
        # Load from environment variables (and .env)
        config = ConfigManager.from_environment()
        endpoint = config.get_endpoint_config()

        # Load from file
        config = ConfigManager.from_file("transfer.json")
        locations = config.get_project_config().locations()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with endpoint/project/cohort/store sections
        """
        self._config_data = config_data
        self._endpoint_config: Optional[EndpointConfig] = None
        self._project_config: Optional[ProjectConfig] = None
        self._cohort_config: Optional[CohortConfig] = None
        self._store_config: Optional[StoreConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from RT_* environment variables.

        Environment Variables:
            - RT_ENDPOINT_URL, RT_SUBMITTING_ORG, RT_IDENTIFIER_SYSTEM, RT_TIMEOUT
            - RT_CERT_PEM / RT_KEY_PEM (inline PEM) or RT_CERT_PATH / RT_KEY_PATH
            - RT_CERT_PASSWORD: Private key passphrase (secret)
            - RT_<TYPE>_FORM / RT_<TYPE>_EVENT for each of DEMOGRAPHICS, DIAGNOSIS,
              LAB, ENCOUNTER, MEDICATION, PROCEDURE, VITALS, ALLERGY
            - RT_COHORT_FORM, RT_COHORT_EVENT, RT_ENROLLMENT_FIELD, RT_STUDY_ID_FIELD
            - RT_LOCAL_CODE_SYSTEM
            - RT_DB_TYPE, RT_DB_PATH

        Parameters:
            env_file: Explicit .env file; defaults to ./.env when present

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            value = os.getenv(f"{ENV_PREFIX}{name}")
            return value if value not in (None, "") else default

        project: Dict[str, Any] = {}
        for key in LOCATION_KEYS.values():
            form = env(f"{key.upper()}_FORM")
            if form:
                project[key] = {"form": form, "event": env(f"{key.upper()}_EVENT")}
        if env("LOCAL_CODE_SYSTEM"):
            project["local_code_system"] = env("LOCAL_CODE_SYSTEM")

        cohort: Dict[str, Any] = {}
        if env("COHORT_FORM"):
            cohort["location"] = {"form": env("COHORT_FORM"), "event": env("COHORT_EVENT")}
        if env("ENROLLMENT_FIELD"):
            cohort["enrollment_field"] = env("ENROLLMENT_FIELD")
        if env("STUDY_ID_FIELD"):
            cohort["study_id_field"] = env("STUDY_ID_FIELD")

        config_data = {
            "endpoint": {
                "url": env("ENDPOINT_URL"),
                "cert_pem": env("CERT_PEM"),
                "key_pem": env("KEY_PEM"),
                "cert_path": env("CERT_PATH"),
                "key_path": env("KEY_PATH"),
                "cert_password": env("CERT_PASSWORD"),
                "submitting_org": env("SUBMITTING_ORG"),
                "identifier_system": env("IDENTIFIER_SYSTEM"),
                "timeout": env("TIMEOUT"),
            },
            "project": project,
            "cohort": cohort,
            "store": {
                "db_type": env("DB_TYPE", "duckdb"),
                "db_path": env("DB_PATH"),
            },
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for files holding certificate material."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def _build(self, model, section: str):
        data = {k: v for k, v in (self._config_data.get(section) or {}).items() if v is not None}
        try:
            return model(**data)
        except PydanticValidationError as e:
            messages = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or section}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid {section} configuration: {messages}") from e

    def get_endpoint_config(self) -> EndpointConfig:
        """Get the validated endpoint configuration.

        Raises:
            ConfigurationError: If the URL is not https or certificate material is missing
        """
        if self._endpoint_config is None:
            self._endpoint_config = self._build(EndpointConfig, "endpoint")
        return self._endpoint_config

    def get_project_config(self) -> ProjectConfig:
        if self._project_config is None:
            self._project_config = self._build(ProjectConfig, "project")
        return self._project_config

    def get_cohort_config(self) -> CohortConfig:
        """Get cohort settings; the cohort form defaults to the demographics form."""
        if self._cohort_config is None:
            section = dict(self._config_data.get("cohort") or {})
            if not section.get("location"):
                demographics = self.get_project_config().demographics
                if demographics is None:
                    raise ConfigurationError(
                        "Cohort form is not configured and there is no demographics form to fall back on"
                    )
                section["location"] = demographics
            self._config_data["cohort"] = section
            self._cohort_config = self._build(CohortConfig, "cohort")
        return self._cohort_config

    def get_store_config(self) -> StoreConfig:
        if self._store_config is None:
            self._store_config = self._build(StoreConfig, "store")
        return self._store_config

    def get_coding_options(self) -> CodingOptions:
        """Combine endpoint and project values into codec coding options."""
        endpoint = self.get_endpoint_config()
        return CodingOptions(
            submitting_org=endpoint.submitting_org,
            identifier_system=endpoint.identifier_system,
            local_code_system=self.get_project_config().local_code_system,
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "endpoint.url")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def describe(self) -> Dict[str, Any]:
        """Return the effective configuration with secrets masked.

        Sections that fail validation are reported by their error message.
        """
        described: Dict[str, Any] = {}
        for section, getter in (
            ("endpoint", self.get_endpoint_config),
            ("project", self.get_project_config),
            ("cohort", self.get_cohort_config),
            ("store", self.get_store_config),
        ):
            try:
                described[section] = getter().model_dump(mode="json")
            except ConfigurationError as e:
                described[section] = {"error": str(e)}
        return described
