import os
from pathlib import Path
from typing import Literal

from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SECRET: str
    DATABASE_URL: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Media storage
    MEDIA_BACKEND: Literal["local", "s3"] = "local"
    MEDIA_ROOT: str = "media"
    MEDIA_BASE_URL: str = "/media"
    S3_BUCKET: str | None = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: SecretStr | None = None
    S3_ENDPOINT_URL: str | None = None  # R2 or MinIO; AWS when unset
    S3_PUBLIC_BASE_URL: str | None = None
    S3_PUBLIC_READ: bool = False

    # Messaging limits
    MESSAGE_MAX_LENGTH: int = 2000
    MESSAGE_PAGE_SIZE: int = 30
    MAX_MESSAGE_ATTACHMENTS: int = 10
    MAX_ATTACHMENT_BYTES: int = 10 * 1024 * 1024
    MAX_AVATAR_BYTES: int = 5 * 1024 * 1024

    NOTIFICATION_PAGE_SIZE: int = 20
    NOTIFICATION_DEDUP_SECONDS: float = (
        5.0  # Repeat pushes of the same notification are dropped within this window
    )

    RUN_MIGRATIONS: bool = True
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @classmethod
    def get_required_fields(cls) -> list[str]:
        """Get all required fields (those without default values)."""
        return [name for name, field in cls.model_fields.items() if field.is_required()]

    def __init__(self, **kwargs):
        try:
            # pydantic_settings reads the .env file first, then environment variables
            super().__init__(**kwargs)
        except ValidationError as e:
            env_file = Path(".env")
            required_fields = self.get_required_fields()

            missing_fields = [field for field in required_fields if not os.getenv(field)]

            if missing_fields:
                fields_str = "\n".join(f"- {field}" for field in missing_fields)
                example_env = "\n".join(
                    f"{field}=your_{field.lower()}_here" for field in missing_fields
                )

                if not env_file.exists():
                    error_msg = (
                        f"\n\nError: Missing required environment variables!"
                        f"\nMissing variables: {fields_str}"
                        f"\n\nFor local development, create a .env file with:"
                        f"\n{example_env}"
                        f"\n\nFor production, set these as environment variables."
                    )
                else:
                    error_msg = (
                        f"\n\nError: Missing required environment variables!"
                        f"\nMissing variables: {fields_str}"
                        f"\n\nPlease add these to your .env file or set as environment variables."
                    )

                raise ValueError(error_msg) from e
            else:
                raise


settings = Settings()
