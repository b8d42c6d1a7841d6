from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class FieldNames:
    """Attribute names used in stored items."""

    id: str = "Id"
    email: str = "Email"
    user_name: str = "UserName"
    provider: str = "Provider"
    user_auth_id: str = "UserAuthId"


@dataclass(frozen=True)
class TableConfig:
    user_auth_table: str = "UserAuth"
    email_mapping_table: str = "UserAuth-ByEmailMapping"
    user_name_mapping_table: str = "UserAuth-ByUsernameMapping"
    user_auth_details_table: str = "UserAuthDetails"

    email_index: str = "UserAuthByEmail"
    user_name_index: str = "UserAuthByUsername"

    fields: FieldNames = field(default_factory=FieldNames)


DEFAULT_TABLES = TableConfig()


class Settings(BaseSettings):
    # Local dev: load from .env automatically.
    # In production: you typically inject real env vars instead.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    # Env vars:
    # - USERAUTH_BACKEND: "memory" (default, process-local) or "dynamodb"
    # - DYNAMODB_ENDPOINT_URL (optional, e.g. http://127.0.0.1:8000 for DynamoDB Local)
    # - AWS_REGION, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY (optional; boto3's default chain otherwise)
    backend: str = Field(default="memory", validation_alias="USERAUTH_BACKEND")

    dynamodb_endpoint_url: str = Field(default="", validation_alias="DYNAMODB_ENDPOINT_URL")
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    aws_access_key_id: str = Field(default="", validation_alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str = Field(default="", validation_alias="AWS_SECRET_ACCESS_KEY")

    user_auth_table: str = Field(default=DEFAULT_TABLES.user_auth_table, validation_alias="USER_AUTH_TABLE")
    email_mapping_table: str = Field(default=DEFAULT_TABLES.email_mapping_table, validation_alias="EMAIL_MAPPING_TABLE")
    user_name_mapping_table: str = Field(
        default=DEFAULT_TABLES.user_name_mapping_table, validation_alias="USERNAME_MAPPING_TABLE"
    )
    user_auth_details_table: str = Field(
        default=DEFAULT_TABLES.user_auth_details_table, validation_alias="USER_AUTH_DETAILS_TABLE"
    )
    email_index: str = Field(default=DEFAULT_TABLES.email_index, validation_alias="EMAIL_INDEX")
    user_name_index: str = Field(default=DEFAULT_TABLES.user_name_index, validation_alias="USERNAME_INDEX")

    digest_realm: str = Field(default="/auth/digest", validation_alias="DIGEST_REALM")

    # Signing secret for login tokens. The default is only fit for local dev/tests.
    auth_secret: str = Field(default="dev-insecure-secret-change-me", validation_alias="AUTH_SECRET")
    auth_token_ttl_seconds: int = Field(default=60 * 60 * 24 * 7, validation_alias="AUTH_TOKEN_TTL_SECONDS")

    def model_post_init(self, __context):  # type: ignore[override]
        self.backend = (self.backend or "memory").lower().strip()

    def table_config(self) -> TableConfig:
        return TableConfig(
            user_auth_table=self.user_auth_table,
            email_mapping_table=self.email_mapping_table,
            user_name_mapping_table=self.user_name_mapping_table,
            user_auth_details_table=self.user_auth_details_table,
            email_index=self.email_index,
            user_name_index=self.user_name_index,
        )

    def endpoint_url(self) -> Optional[str]:
        return self.dynamodb_endpoint_url.strip() or None


def get_settings() -> Settings:
    """Load settings from environment.

    Keep this as the single canonical constructor for Settings(). FastAPI
    dependencies and tests can override/monkeypatch this function.
    """
    return Settings()
