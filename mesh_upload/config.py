from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "mesh-upload-service"
    app_version: str = "dev"
    database_url: str = "sqlite:///./mesh_upload.db"
    database_auto_create: bool = True
    storage_backend: str = "local"
    storage_root: str = "./data"
    staging_bucket: str = "stl-files-chunks"
    final_bucket: str = "stl-files"
    aws_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    public_base_url: str = "http://localhost:8000"
    object_public_base_url: str = ""
    url_signing_secret: str = "dev-url-signing-secret"
    final_bucket_public: bool = False
    signed_url_ttl_seconds: int = 10 * 365 * 24 * 3600
    session_ttl_seconds: int = 3600
    assembly_lease_seconds: int = 900
    assembly_fetch_concurrency: int = 4
    cleanup_concurrency: int = 8
    multipart_part_size_bytes: int = 8 * 1024 * 1024
    max_request_body_bytes: int = 2 * 1024 * 1024
    cors_allow_origins: str = "*"
    reaper_enabled: bool = False
    reaper_interval_seconds: int = 900
    tracing_enabled: bool = False
    tracing_service_name: str = "mesh-upload-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True


settings = Settings()
