import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from image_studio.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process-wide settings, built once at startup and passed to `create_app`."""

    model_config = SettingsConfigDict(extra="ignore")

    # Credential: either the key itself or the name of a mounted secret file.
    gemini_api_key: str | None = None
    gemini_api_key_secret: str | None = None
    secrets_dir: str = "/run/secrets"

    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    generate_model: str = "imagen-4.0-generate-001"
    edit_model: str = "gemini-2.5-flash-image-preview"
    upstream_timeout: float = 120.0

    # Unset means the UI talks to the proxy in-process.
    proxy_url: str | None = None

    max_source_images: int = 8
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    def resolve_api_key(self) -> str:
        """Return the model credential or raise `ConfigurationError`.

        The direct `GEMINI_API_KEY` value wins. Otherwise the secret named by
        `GEMINI_API_KEY_SECRET` is read from `SECRETS_DIR`, which is where
        container platforms mount referenced secrets as files.
        """
        if self.gemini_api_key and self.gemini_api_key.strip():
            return self.gemini_api_key.strip()

        if self.gemini_api_key_secret:
            secret_path = Path(self.secrets_dir) / self.gemini_api_key_secret
            try:
                value = secret_path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise ConfigurationError(
                    f"Could not read secret '{self.gemini_api_key_secret}' from {self.secrets_dir}"
                ) from exc
            if value:
                logger.info("Loaded API credential from secret %s", self.gemini_api_key_secret)
                return value
            raise ConfigurationError(f"Secret '{self.gemini_api_key_secret}' is empty")

        raise ConfigurationError(
            "The GEMINI_API_KEY environment variable is not set. "
            "Set it directly or point GEMINI_API_KEY_SECRET at a mounted secret."
        )
