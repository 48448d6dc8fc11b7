"""Runtime settings read from the environment."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from dnsproof.models import ChallengeType

LETSENCRYPT_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"


class Settings(BaseSettings):
    """Values consumed by an authorization run and the Lambda entry points.

    Every field can be set with a ``DNSPROOF_``-prefixed environment
    variable, e.g. ``DNSPROOF_S3_BUCKET``.
    """

    model_config = SettingsConfigDict(env_prefix="DNSPROOF_", env_file=".env", extra="ignore")

    # Account and target
    email: str = ""
    domain: str = ""
    challenge: ChallengeType = ChallengeType.DNS_01

    # Storage
    s3_bucket: str = ""
    s3_kms_key_id: str | None = None

    # Authority
    directory_url: str | None = None
    staging: bool = False
    poll_interval: float = 2.0
    max_wait: float = 120.0

    # Slack dispatcher
    slack_token: str = ""
    executor_func_name: str = ""

    log_level: str = "INFO"

    def resolved_directory_url(self) -> str:
        """The configured directory URL, or Let's Encrypt's (staging when requested)."""
        if self.directory_url:
            return self.directory_url
        if self.staging:
            return LETSENCRYPT_STAGING_DIRECTORY_URL
        return LETSENCRYPT_DIRECTORY_URL
