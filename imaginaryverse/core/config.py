from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./imaginaryverse.db"

    JWT_SECRET: str = "CHANGE_ME"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    # Free tier and reward constants
    FREE_TOTAL_CREDITS: int = 4
    FREE_DAILY_CREDITS: int = 4
    FREE_IMAGE_CREDITS: int = 0
    FREE_PROMPT_CREDITS: int = 4
    FREE_PLAN_NAME: str = "Free"
    REWARD_AD_CREDITS: int = 2

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_REMINDER_DAYS: int = 3
    CREDIT_REFRESH_MIN_HOURS: int = 24
    NOT_FOUND_EXPIRY_GRACE_DAYS: int = 30
    NOT_FOUND_NO_EXPIRY_DAYS: int = 60
    PLAN_PRODUCT_TYPE_MAP: str = ""

    # Reconciler pacing (seconds between users)
    GOOGLE_RECONCILE_DELAY_SECONDS: float = 0.05
    APPLE_RECONCILE_DELAY_SECONDS: float = 0.1

    # Store API retry (429/5xx)
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY_SECONDS: float = 0.5

    # Worker
    WORKER_INTERVAL_SECONDS: int = 60
    WORKER_SHUTDOWN_WAIT_SECONDS: float = 3.0

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_CURRENCY: str = "usd"

    # App Store (legacy verifyReceipt flow)
    APP_STORE_SHARED_SECRET: str | None = None
    APP_STORE_SANDBOX: bool = False
    APP_STORE_VERIFY_URL_PROD: str = "https://buy.itunes.apple.com/verifyReceipt"
    APP_STORE_VERIFY_URL_SANDBOX: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # App Store Server API / App Store Connect API
    APP_STORE_BUNDLE_ID: str | None = None
    APP_STORE_APP_ID: str | None = None
    APP_STORE_ISSUER_ID: str | None = None
    APP_STORE_KEY_ID: str | None = None
    APP_STORE_PRIVATE_KEY_PEM: str | None = None
    APP_STORE_SERVER_API_URL: str = "https://api.storekit.itunes.apple.com"
    APP_STORE_CONNECT_API_URL: str = "https://api.appstoreconnect.apple.com/v1"

    # Google Play Server-side validation (Play Developer API)
    GOOGLE_PLAY_PACKAGE_NAME: str | None = None
    GOOGLE_PLAY_SERVICE_ACCOUNT_EMAIL: str | None = None
    GOOGLE_PLAY_SERVICE_ACCOUNT_PRIVATE_KEY_PEM: str | None = None
    GOOGLE_PLAY_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_PLAY_ANDROID_PUBLISHER_SCOPE: str = "https://www.googleapis.com/auth/androidpublisher"
    GOOGLE_PLAY_API_URL: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"

settings = Settings()
