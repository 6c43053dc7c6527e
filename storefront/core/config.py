from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    JWT_SECRET: str
    JWT_ISSUER: str = "storefront"
    ACCESS_TTL_MIN: int = 15

    COOKIE_DOMAIN: str | None = None
    COOKIE_SECURE: bool = False

    ADMIN_EMAIL: str | None = None

    FRONTEND_BASE_URL: str = "http://localhost:5173"
    API_BASE_URL: str = "http://localhost:4000"
    ALLOWED_CORS_ORIGINS: str = ""

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_MODE: str = "test"
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_SECRET_TEST: str | None = None
    STRIPE_WEBHOOK_SECRET_LIVE: str | None = None
    STRIPE_SUCCESS_URL: str | None = None
    STRIPE_CANCEL_URL: str | None = None
    CURRENCY: str = "EUR"

    DOWNLOADS_STORAGE_DIR: str = "storage/downloads"
    INVOICE_STORAGE_DIR: str = "storage/invoices"

    RESEND_API_KEY: str | None = None
    EMAIL_FROM: str | None = None
    EMAIL_FROM_NAME: str = "ComptaMatch"
    EMAIL_SEND_ENABLED: bool = True

    SELLER_NAME: str = "ComptaMatch"
    SELLER_ADDRESS: str | None = None
    SELLER_SIRET: str | None = None
    SELLER_VAT_NUMBER: str | None = None
    SELLER_VAT_MENTION: str = "TVA non applicable, art. 293 B du CGI"

    @field_validator("API_BASE_URL", mode="after")
    @classmethod
    def append_api_suffix(cls, v: str) -> str:
        normalized = v.rstrip("/")
        return normalized if normalized.endswith("/api") else f"{normalized}/api"

    @property
    def is_prod(self) -> bool:
        return self.ENV.lower() == "prod"

    @property
    def stripe_mode(self) -> str:
        return "live" if self.STRIPE_MODE == "live" else "test"

    @property
    def active_webhook_secret_source(self) -> str | None:
        specific = (
            "STRIPE_WEBHOOK_SECRET_LIVE"
            if self.stripe_mode == "live"
            else "STRIPE_WEBHOOK_SECRET_TEST"
        )
        if getattr(self, specific):
            return specific
        if self.STRIPE_WEBHOOK_SECRET:
            return "STRIPE_WEBHOOK_SECRET"
        return None

    @property
    def active_webhook_secret(self) -> str | None:
        source = self.active_webhook_secret_source
        return getattr(self, source) if source else None

    @property
    def frontend_base_url(self) -> str:
        return self.FRONTEND_BASE_URL.rstrip("/")

    @property
    def cors_origins(self) -> list[str]:
        extra = [o.strip() for o in self.ALLOWED_CORS_ORIGINS.replace(",", " ").split()]
        origins = [self.frontend_base_url, *extra]
        # keep order, drop duplicates
        return list(dict.fromkeys(o for o in origins if o))


settings = Settings()
