from pathlib import Path
from pydantic import AnyUrl, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Dict, Literal
import orjson

from .errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"
    # Transport selection: "grpc" or "memory"
    TRANSPORT: Literal["grpc", "memory"] = "grpc"
    # Event bus endpoint and authentication headers
    PUBSUB_ENDPOINT: str = "api.pubsub.salesforce.com:443"
    INSTANCE_URL: str = ""
    ACCESS_TOKEN: str = ""
    TENANT_ID: str = ""
    # Subscription
    TOPIC_NAME: str = ""
    REPLAY_PRESET: Literal["LATEST", "EARLIEST", "CUSTOM"] = "LATEST"
    REPLAY_ID: str | None = None  # hex-encoded replay token, required for CUSTOM
    NUM_REQUESTED: int = Field(default=0, ge=0)  # 0 = stream indefinitely
    USE_SCHEMA: bool = True
    # Generated protobuf module for the bus API
    GRPC_MESSAGES_MODULE: str = "pubsub_api_pb2"
    GRPC_SERVICE: str = "eventbus.v1.PubSub"
    MAX_RECEIVE_MESSAGE_MB: int = 100
    # Credit renewal and reconnection
    RENEW_CREDITS: bool = False
    RETRY_MAX_ATTEMPTS: int = 0  # 0 = never retry, -1 = retry forever
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    # Checkpoint store selection: "none", "memory" or "redis"
    CHECKPOINT_BACKEND: Literal["none", "memory", "redis"] = "none"
    REDIS_URL: AnyUrl | None = None
    RESUME_FROM_CHECKPOINT: bool = False
    METRICS_PORT: int | None = None

    @field_validator("REPLAY_PRESET", mode="before")
    @classmethod
    def _upper_preset(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("TRANSPORT", mode="before")
    @classmethod
    def _lower_transport(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def auth_headers(self) -> Dict[str, str]:
        """Headers attached to every call by the auth interceptor."""
        return {
            "accesstoken": self.ACCESS_TOKEN,
            "instanceurl": self.INSTANCE_URL,
            "tenantid": self.TENANT_ID,
        }

    def replay_token(self) -> bytes | None:
        """Decode REPLAY_ID into the raw token bytes."""
        if not self.REPLAY_ID:
            return None
        try:
            return bytes.fromhex(self.REPLAY_ID)
        except ValueError as e:
            raise ConfigurationError(f"REPLAY_ID is not valid hex: {e}") from e

    def validate_connection(self) -> None:
        """
        Check the settings needed to open a subscription.

        Raises:
            ConfigurationError: If a required setting is missing
        """
        required = {"TOPIC_NAME": self.TOPIC_NAME}
        if self.TRANSPORT == "grpc":
            required.update({
                "INSTANCE_URL": self.INSTANCE_URL,
                "ACCESS_TOKEN": self.ACCESS_TOKEN,
                "TENANT_ID": self.TENANT_ID,
            })
        for name, value in required.items():
            if not value.strip():
                raise ConfigurationError(f"{name} is required")

        if self.REPLAY_PRESET == "CUSTOM" and not self.REPLAY_ID:
            raise ConfigurationError("REPLAY_ID is required when REPLAY_PRESET is CUSTOM")

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        """
        Load settings from a JSON file.

        Values in the file take precedence over environment variables.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            data = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration file must contain a JSON object")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings in {path}: {_problems(e)}") from e


def _problems(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load settings from the environment.

    Raises:
        ConfigurationError: If a setting has an invalid value
    """
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {_problems(e)}") from e
