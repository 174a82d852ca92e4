from datetime import datetime
from functools import lru_cache
from typing import Optional, Generic, TypeVar, Any, List
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings

# --- Configuration ---
class Settings(BaseSettings):
    SERVICE_NAME: str = "offramp-service"
    VERSION: str = "1.0.0"
    CORS_ORIGINS: List[str] = ["*"]

    # memory | mongo
    STORE_BACKEND: str = "memory"
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "offramp_db"

    ONMETA_API_URL: str = "https://stg.api.onmeta.in/v1"
    ONMETA_API_KEY: str = ""
    ONMETA_TIMEOUT_SECONDS: float = 10.0
    FORWARDED_FOR: str = "127.0.0.1"
    CHAIN_ID: int = 137

    # Externally reachable base URL used to build the webhook callback
    BASE_URL: str = "http://localhost:5000"

    USDT_INR_SEED_RATE: str = "84.50"

    BROADCAST_SEND_TIMEOUT: float = 5.0
    INITIATE_STORE_RETRIES: int = 3
    INITIATE_RETRY_BACKOFF: float = 0.2

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings() -> Settings:
    return Settings()

# --- Database ---
def get_db_client(url: Optional[str] = None) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url or get_settings().MONGO_URL)

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: Any = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid request data", errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": detail, "errors": self.errors}
        )

class DuplicateKeyException(AppException):
    def __init__(self, detail: str = "Duplicate key"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class InvalidTransitionException(AppException):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move transaction from {current} to {requested}"
        )

class ImmutableFieldException(AppException):
    def __init__(self, field: str, current: str, requested: str):
        self.field = field
        self.current = current
        self.requested = requested
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{field} is already set to {current}; refusing {requested}"
        )

class InvalidAmountException(AppException):
    def __init__(self, detail: str = "No valid token amount provided"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class ProviderException(AppException):
    def __init__(
        self,
        message: str = "Off-ramp provider request failed",
        provider_status: Optional[int] = None,
        body: Optional[str] = None
    ):
        self.provider_status = provider_status
        self.body = body
        if provider_status is not None:
            error = f"Onmeta API error: {provider_status} - {body}"
        else:
            error = body or "Unknown error occurred"
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": message, "error": error, "provider_status": provider_status}
        )

class WebhookProcessingException(AppException):
    def __init__(self, detail: str = "Webhook processing failed"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
