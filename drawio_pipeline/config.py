# drawio_pipeline/config.py
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid"""
    pass


_SETTINGS_CONFIG = SettingsConfigDict(
    env_file=".env",
    case_sensitive=True,
    extra="ignore",
    populate_by_name=True,
)


class PipelineSettings(BaseSettings):
    """
    File layout, renderer and locking settings for the processing run.
    Reads from Environment Variables set by the CI workflow.
    """
    model_config = _SETTINGS_CONFIG

    # --- Repository layout ---
    drawio_dir: Path = Field(Path("drawio_files"), validation_alias=AliasChoices("DIAGRAMS_DRAWIO_DIR", "DRAWIO_FILES_DIR"))
    png_dir: Path = Field(Path("png_files"), validation_alias=AliasChoices("DIAGRAMS_PNG_DIR", "PNG_FILES_DIR"))
    counter_file: Path = Field(Path("drawio_files/.counter"), validation_alias=AliasChoices("DIAGRAMS_COUNTER_FILE", "COUNTER_FILE"))
    changelog_file: Path = Field(Path("png_files/CHANGELOG.csv"), validation_alias=AliasChoices("DIAGRAMS_CHANGELOG_FILE", "CHANGELOG_FILE"))
    version_file: Path = Field(Path("png_files/.versions"), validation_alias=AliasChoices("DIAGRAMS_VERSION_FILE", "VERSION_FILE"))
    diagram_extension: str = ".drawio"

    # --- Renderer ---
    png_scale: float = Field(2.0, validation_alias=AliasChoices("DIAGRAMS_PNG_SCALE", "PNG_SCALE"))
    png_quality: int = Field(100, validation_alias=AliasChoices("DIAGRAMS_PNG_QUALITY", "PNG_QUALITY"))
    drawio_binary: str = Field("drawio", validation_alias="DRAWIO_BINARY")
    use_xvfb: Optional[bool] = Field(None, validation_alias="DIAGRAMS_USE_XVFB")
    render_timeout_seconds: int = Field(120, validation_alias="DIAGRAMS_RENDER_TIMEOUT")
    min_png_bytes: int = Field(1000, validation_alias="DIAGRAMS_MIN_PNG_BYTES")

    # --- Change detection ---
    specific_file: Optional[str] = Field(None, validation_alias="SPECIFIC_FILE")
    changed_files: Optional[str] = Field(None, validation_alias="CHANGED_FILES")
    diff_base: Optional[str] = Field(None, validation_alias="DIAGRAMS_DIFF_BASE")

    # --- Shared-file locking ---
    lock_wait_seconds: float = Field(30.0, validation_alias="DIAGRAMS_LOCK_WAIT")
    lock_poll_seconds: float = Field(1.0, validation_alias="DIAGRAMS_LOCK_POLL")
    lock_stale_seconds: float = Field(300.0, validation_alias="DIAGRAMS_LOCK_STALE")

    LOG_LEVEL: str = "INFO"

    def changed_file_list(self) -> List[str]:
        """CHANGED_FILES is newline separated; file names may contain spaces."""
        if not self.changed_files:
            return []
        return [line.strip() for line in self.changed_files.splitlines() if line.strip()]


class SharePointSettings(BaseSettings):
    """
    Credentials and destination for publishing the changelog.

    REQUIRED ENVIRONMENT VARIABLES:
    --------------------------------
    SHAREPOINT_TENANT_ID     : Microsoft 365 tenant ID (a GUID)
    SHAREPOINT_CLIENT_ID     : Application (client) ID of the Azure AD app
    SHAREPOINT_CLIENT_SECRET : Secret for the Azure AD app
    SHAREPOINT_SITE_ID       : Target SharePoint site

    The AZURE_* names are accepted as fallbacks.
    """
    model_config = _SETTINGS_CONFIG

    tenant_id: Optional[str] = Field(None, validation_alias=AliasChoices("SHAREPOINT_TENANT_ID", "DIAGRAMS_SHAREPOINT_TENANT_ID", "AZURE_TENANT_ID"))
    client_id: Optional[str] = Field(None, validation_alias=AliasChoices("SHAREPOINT_CLIENT_ID", "DIAGRAMS_SHAREPOINT_CLIENT_ID", "AZURE_CLIENT_ID"))
    client_secret: Optional[str] = Field(None, validation_alias=AliasChoices("SHAREPOINT_CLIENT_SECRET", "DIAGRAMS_SHAREPOINT_CLIENTSECRET", "AZURE_CLIENT_SECRET"))
    site_id: Optional[str] = Field(None, validation_alias="SHAREPOINT_SITE_ID")
    drive_id: Optional[str] = Field(None, validation_alias=AliasChoices("SHAREPOINT_DRIVE_ID", "SHAREPOINT_BASE_DRIVE_ID"))

    folder: str = Field("Diagrams", validation_alias="SHAREPOINT_FOLDER")
    output_filename: str = Field("Diagrams_Changelog.csv", validation_alias="SHAREPOINT_OUTPUT_FILENAME")

    connect_timeout_seconds: float = 20.0
    read_timeout_seconds: float = 60.0
    max_attempts: int = Field(8, validation_alias="SHAREPOINT_MAX_ATTEMPTS")

    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ("tenant_id", "client_id", "client_secret", "site_id")

    def missing(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    def require(self) -> "SharePointSettings":
        """Validate that all credentials are present"""
        missing = self.missing()
        if missing:
            env_names = ", ".join(f"SHAREPOINT_{name.upper()}" for name in missing)
            error_msg = f"Missing required environment variables: {env_names}"
            logger.error(error_msg)
            raise ConfigurationError(error_msg)
        return self


class TeamsSettings(BaseSettings):
    model_config = _SETTINGS_CONFIG

    webhook_url: Optional[str] = Field(None, validation_alias=AliasChoices("TEAMS_WEBHOOK_URL", "DIAGRAMS_TEAMS_NOTIFICATION_WEBHOOK"))
    timeout_seconds: float = 15.0

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)


class CIContext(BaseSettings):
    """GitHub Actions run metadata used for summaries and notifications"""
    model_config = _SETTINGS_CONFIG

    repository: str = Field("Unknown repository", validation_alias="GITHUB_REPOSITORY")
    sha: str = Field("Unknown commit", validation_alias="GITHUB_SHA")
    workflow: str = Field("Unknown workflow", validation_alias="GITHUB_WORKFLOW")
    run_id: Optional[str] = Field(None, validation_alias="GITHUB_RUN_ID")
    run_number: Optional[str] = Field(None, validation_alias="GITHUB_RUN_NUMBER")
    server_url: str = Field("https://github.com", validation_alias="GITHUB_SERVER_URL")
    actor: str = Field("System", validation_alias="GITHUB_ACTOR")
    step_summary: Optional[str] = Field(None, validation_alias="GITHUB_STEP_SUMMARY")

    @property
    def run_url(self) -> Optional[str]:
        if not self.run_id:
            return None
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"


@dataclass
class AppConfig:
    """Configuration built once at startup and handed to every component"""
    pipeline: PipelineSettings
    sharepoint: SharePointSettings
    teams: TeamsSettings
    ci: CIContext

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "AppConfig":
        if env_file:
            load_dotenv(env_file, override=False)
        config = cls(
            pipeline=PipelineSettings(_env_file=None),
            sharepoint=SharePointSettings(_env_file=None),
            teams=TeamsSettings(_env_file=None),
            ci=CIContext(_env_file=None),
        )
        logger.info(
            f"Configuration loaded: drawio_dir={config.pipeline.drawio_dir}, "
            f"png_dir={config.pipeline.png_dir}, scale={config.pipeline.png_scale}, "
            f"quality={config.pipeline.png_quality}"
        )
        return config
