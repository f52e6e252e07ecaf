from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_NAME: str = "warmcrawl"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Browser
    BROWSER_HEADLESS: bool = True
    DEFAULT_NAVIGATION_TIMEOUT: int = 30000  # ms
    REQUEST_TIMEOUT: int = 15000  # ms

    # Local forward proxy the browser is pinned to
    PROXY_HOST: str = "127.0.0.1"
    PROXY_PORT: int = 8000

    # Behavior recipes (empty = use the recipes bundled with the package)
    BEHAVIOR_SOURCE_URL: str = ""
    BEHAVIOR_FETCH_TIMEOUT: float = 10.0  # seconds

    # Public location of archived results, used for json_endpoint / raw_html_file
    RESULTS_BASE_URL: str = "https://crawling-searches.s3-us-west-1.amazonaws.com"

    # Archiving: "" (disabled), "local" or "http"
    ARCHIVE_BACKEND: str = ""
    ARCHIVE_DIR: str = "./archive"
    ARCHIVE_UPLOAD_URL: str = ""  # PUT target, object key is appended
    ARCHIVE_AUTH_TOKEN: str = ""
    ARCHIVE_TIMEOUT: float = 30.0  # seconds

    # Consecutive internal errors before the handler parks in the failed state
    MAX_CONSECUTIVE_FAILURES: int = 3

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 4444

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "WARMCRAWL_",
        "extra": "ignore",
    }


settings = Settings()
