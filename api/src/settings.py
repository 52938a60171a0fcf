from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_api_')

    enabled_gateways: list[str] = Field(default=['card', 'redirect'])
    gateway_call_timeout: float = Field(default=15.0)
    reconciliation_max_attempts: int = Field(default=3)

    payment_event_loop_sleep_duration: float = Field(default=1.0)
    payment_event_max_attempts: int = Field(default=20)
    # A claimed event is not picked up by another worker until the claim runs out
    payment_event_claim_duration: float = Field(default=120.0)

    notification_timeout: float = Field(default=5.0)
    notification_loop_sleep_duration: float = Field(default=1.0)
    activation_handler_url: str | None = Field(default=None)

    # None - attempts stay in `awaiting_confirmation` until the gateway reports
    awaiting_confirmation_ttl_sec: float | None = Field(default=None)
    expiry_loop_sleep_duration: float = Field(default=60.0)


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_postgres_')

    host: str = Field(default='127.0.0.1')
    port: int = Field(default=5432)
    user: str = Field(default='postgres')
    password: str = Field(default='postgres')
    db: str = Field(default='enroll')
    url: str | None = Field(default=None)

    def get_url(self, driver: str | None, db: str | None = None):
        if self.url is not None:
            return self.url
        scheme = f'postgresql{f"+{driver}" if driver else ""}'
        return f'{scheme}://{self.user}:{self.password}@{self.host}:{self.port}/{db or self.db}'


class KafkaSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_kafka_')

    bootstrap_servers: str = Field(default='localhost:19092')
    enrollment_topic: str = Field(default='enrollment')


class CatalogSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_catalog_')

    base_url: str = Field(default='http://catalog:8000')
    timeout: float = Field(default=5.0)


class CardGatewaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_card_')

    base_url: str = Field(default='https://api.stripe.com')
    secret_key: str = Field(default='sk_test_placeholder')
    webhook_secret: str = Field(default='whsec_placeholder')
    webhook_tolerance_sec: int = Field(default=300)


class RedirectGatewaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='enroll_redirect_')

    base_url: str = Field(default='https://sandbox.sslcommerz.com')
    store_id: str = Field(default='testbox')
    store_password: str = Field(default='qwerty')
    server_url: str = Field(default='http://127.0.0.1:8000')
    currency: str = Field(default='BDT')
    min_amount: Decimal = Field(default=Decimal('10'))


settings = Settings()
pg_settings = PostgresSettings()
kafka_settings = KafkaSettings()
catalog_settings = CatalogSettings()
card_settings = CardGatewaySettings()
redirect_settings = RedirectGatewaySettings()
