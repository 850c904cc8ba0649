from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "TAM Schedules API"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    # CORS: "*" for dev; in production set to comma-separated origins, e.g. "https://app.example.com"
    cors_origins: str = "*"

    # Upstream TAM cartography API
    tam_base_url: str = "https://cartographie.tam-voyages.com/gtfs"
    tam_site_url: str = "https://cartographie.tam-voyages.com/"  # HTML page carrying the header-api-key input
    upstream_timeout_seconds: float = 5.0

    # Credential rotation (seconds). The loop also runs once at startup.
    credential_rotation_seconds: float = 300.0
    rotation_enabled: bool = True

    # Line classification
    shuttle_line_id: str = "96"  # Navette Ovalie: single direction, no direction segment in topology path
    extra_urban_line_ids: str = ""  # Comma-separated bus ids shown as extra-urban. Example: EXTRA_URBAN_LINE_IDS=30,31,32


def get_settings() -> Settings:
    return Settings()


def parse_line_ids(value: str) -> set[str]:
    return {v.strip() for v in value.split(",") if v.strip()}
