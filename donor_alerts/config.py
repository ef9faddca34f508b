# donor_alerts/config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """
    Process-wide configuration. Built once at startup and passed to
    whatever needs it; nothing reads os.environ after that.
    """

    log_level: str = "INFO"

    # storage
    store_backend: str = "memory"  # "memory" | "azure"
    azure_storage_connection_string: Optional[str] = None
    requests_table: str = "bloodrequests"
    users_table: str = "users"
    queue_table: str = "notificationqueue"
    store_timeout_seconds: float = 10.0

    # external event feed
    service_bus_connection_string: Optional[str] = None
    service_bus_queue_name: str = "donation-events"

    # push gateways
    fcm_project_id: Optional[str] = None
    # service-account JSON key; access tokens are minted and refreshed from it
    fcm_credentials_file: Optional[str] = None
    onesignal_app_id: Optional[str] = None
    onesignal_api_key: Optional[str] = None
    gateway_timeout_seconds: float = 10.0

    # auth for the HTTP surface
    jwt_secret: str = "change-me"
    jwt_alg: str = "HS256"

    # pipeline tuning
    # the profile store answers at most 10 ids per lookup
    profile_lookup_batch_size: int = Field(default=10, ge=1, le=10)
    event_max_redeliveries: int = 2
    delivery_max_attempts: int = 3
    retention_hours: int = 24
    stuck_after_minutes: int = 15

    # timers
    expiry_sweep_interval_seconds: int = 300
    retention_sweep_interval_seconds: int = 86400
    requeue_sweep_interval_seconds: int = 600
    background_tasks_enabled: bool = True

    @property
    def fcm_configured(self) -> bool:
        return bool(self.fcm_credentials_file)

    @property
    def gateway_call_timeout_seconds(self) -> float:
        """
        Outer bound on one send, above the HTTP timeout so that the HTTP
        client gives up first. Covers a token refresh plus one resend.
        """
        return self.gateway_timeout_seconds * 3 + 5

    @property
    def onesignal_configured(self) -> bool:
        return bool(self.onesignal_app_id and self.onesignal_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        # .env first, real environment wins
        load_dotenv()
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            store_backend=os.getenv("STORE_BACKEND", "memory"),
            azure_storage_connection_string=os.getenv("AZURE_STORAGE_CONNECTION_STRING"),
            requests_table=os.getenv("REQUESTS_TABLE", "bloodrequests"),
            users_table=os.getenv("USERS_TABLE", "users"),
            queue_table=os.getenv("QUEUE_TABLE", "notificationqueue"),
            store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 10.0),
            service_bus_connection_string=os.getenv("AZURE_SERVICE_BUS_CONNECTION_STRING"),
            service_bus_queue_name=os.getenv("AZURE_SERVICE_BUS_QUEUE_NAME", "donation-events"),
            fcm_project_id=os.getenv("FCM_PROJECT_ID"),
            fcm_credentials_file=os.getenv("FCM_CREDENTIALS_FILE") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
            onesignal_app_id=os.getenv("ONESIGNAL_APP_ID"),
            onesignal_api_key=os.getenv("ONESIGNAL_API_KEY"),
            gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 10.0),
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_alg=os.getenv("JWT_ALG", "HS256"),
            profile_lookup_batch_size=_env_int("PROFILE_LOOKUP_BATCH_SIZE", 10),
            event_max_redeliveries=_env_int("EVENT_MAX_REDELIVERIES", 2),
            delivery_max_attempts=_env_int("DELIVERY_MAX_ATTEMPTS", 3),
            retention_hours=_env_int("RETENTION_HOURS", 24),
            stuck_after_minutes=_env_int("STUCK_AFTER_MINUTES", 15),
            expiry_sweep_interval_seconds=_env_int("EXPIRY_SWEEP_INTERVAL_SECONDS", 300),
            retention_sweep_interval_seconds=_env_int("RETENTION_SWEEP_INTERVAL_SECONDS", 86400),
            requeue_sweep_interval_seconds=_env_int("REQUEUE_SWEEP_INTERVAL_SECONDS", 600),
            background_tasks_enabled=_env_bool("BACKGROUND_TASKS_ENABLED", True),
        )
