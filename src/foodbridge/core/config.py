from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional

class Settings(BaseSettings):

    AWS_PROFILE: Optional[str] = None
    AWS_REGION: str = "eu-central-1"
    DYNAMO_TABLE_NAME: str = "foodbridge-donations"
    DYNAMO_CREATED_INDEX: str = "DonationsByCreatedAt"
    DYNAMO_ENDPOINT_URL: Optional[str] = None  # e.g. http://localhost:8000 for DynamoDB Local

    DONATION_STORE: Literal["dynamodb", "memory"] = "dynamodb"
    SNAPSHOT_POLL_SECONDS: float = 5.0
    LOG_LEVEL: str = "INFO"
    API_ROOT_PATH: str = ""  # "/Prod" behind the API Gateway stage

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

@lru_cache()
def get_settings() -> Settings:
    return Settings()
