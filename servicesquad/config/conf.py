from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.utils import get_secret

MEMORY_BACKEND = "memory"
RABBITMQ_BACKEND = "rabbitmq"
REDIS_BACKEND = "redis"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "servicesquad"
    log_level: str = "INFO"
    port: int = 3000

    # Persistence. DATABASE_URL wins over the POSTGRES_* parts.
    database_url: Optional[str] = None
    database_echo: bool = False

    # Background jobs: "memory" or "rabbitmq"
    broker: str = RABBITMQ_BACKEND

    # Tracking fan-out: "memory" or "redis"
    tracking_backend: str = MEMORY_BACKEND

    # Directions
    google_maps_api_key: Optional[str] = None
    directions_url: str = "https://maps.googleapis.com/maps/api/directions/json"
    directions_timeout_seconds: float = 10.0

    # Availability
    default_advance_booking_days: int = 30
    default_booking_buffer_minutes: int = 30

    # Tracking thresholds
    path_min_step_meters: float = 5.0
    path_max_points: int = 100
    route_min_distance_meters: float = 10.0
    route_refetch_distance_meters: float = 50.0
    route_refetch_interval_seconds: float = 15.0
    route_plausibility_min_ratio: float = 0.5
    route_plausibility_max_ratio: float = 2.0
    average_speed_kmh: float = 30.0
    arrival_radius_meters: float = 50.0

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_user = get_secret("POSTGRES_USER")
        db_pass = get_secret("POSTGRES_PASSWORD")
        db_host = get_secret("POSTGRES_HOST", "localhost")
        db_port = get_secret("POSTGRES_PORT", "5432")
        db = get_secret("POSTGRES_DB", "servicesquad")
        return f"postgresql+asyncpg://{db_user}:{db_pass}@{db_host}:{db_port}/{db}"

    def resolved_redis_url(self) -> str:
        password = get_secret("REDIS_PASSWORD")
        host = get_secret("REDIS_HOST", "localhost")
        port = get_secret("REDIS_PORT", "6379")
        db = get_secret("REDIS_DB", "0")
        auth = f":{password}@" if password else ""
        return f"redis://{auth}{host}:{port}/{db}"

    def resolved_rabbitmq_url(self) -> str:
        rabbitmq_user = get_secret("RABBITMQ_USER", "guest")
        rabbitmq_pass = get_secret("RABBITMQ_PASSWORD", "guest")
        rabbitmq_host = get_secret("RABBITMQ_HOST", "localhost")
        rabbitmq_port = get_secret("RABBITMQ_PORT", "5672")
        return f"amqp://{rabbitmq_user}:{rabbitmq_pass}@{rabbitmq_host}:{rabbitmq_port}"

    def resolved_google_maps_api_key(self) -> Optional[str]:
        return self.google_maps_api_key or get_secret("GOOGLE_MAPS_API_KEY")


settings = Settings()
