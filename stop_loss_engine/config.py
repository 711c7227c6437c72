"""Configuration for Stop Loss Engine service."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    """Stop Loss Engine configuration."""

    # Database - stop loss and strategy persistence (PostgreSQL)
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_user: str = Field(default="trader", alias="DB_USER")
    db_password: str = Field(default="trader5", alias="DB_PASSWORD")
    db_name: str = Field(default="trading_platform", alias="DB_NAME")

    # Redis - event broadcast channel and latest price mirror
    redis_host: str = Field(default="redis", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_events_channel: str = Field(default="stop_loss_engine:events", alias="REDIS_EVENTS_CHANNEL")
    redis_prices_key: str = Field(default="stop_loss_engine:prices", alias="REDIS_PRICES_KEY")

    # Telegram - trigger/execution notifications
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHAT_ID")

    # Exchange - CoinDCX futures
    exchange_base_url: str = Field(default="https://api.coindcx.com", alias="EXCHANGE_BASE_URL")
    exchange_api_key: str = Field(default="", alias="EXCHANGE_API_KEY")
    exchange_api_secret: str = Field(default="", alias="EXCHANGE_API_SECRET")
    default_margin_currency: str = Field(default="USDT", alias="DEFAULT_MARGIN_CURRENCY")

    # Market data - Binance USD-M futures
    market_data_base_url: str = Field(default="https://fapi.binance.com", alias="MARKET_DATA_BASE_URL")
    price_stream_url: str = Field(default="wss://fstream.binance.com/stream", alias="PRICE_STREAM_URL")
    # Comma-separated, e.g. "BTCUSDT,ETHUSDT" (a JSON list is accepted too)
    watch_symbols_raw: str = Field(default="BTCUSDT,ETHUSDT,SOLUSDT,SUIUSDT", alias="WATCH_SYMBOLS")
    candle_limit: int = Field(default=1000, alias="CANDLE_LIMIT")
    levels_cache_seconds: int = Field(default=300, alias="LEVELS_CACHE_SECONDS")

    # Strategy sweep
    sweep_interval_seconds: int = Field(default=300, alias="SWEEP_INTERVAL_SECONDS")
    sweep_respects_timeframe: bool = Field(default=False, alias="SWEEP_RESPECTS_TIMEFRAME")
    sweep_workers: int = Field(default=4, alias="SWEEP_WORKERS")

    # Execution
    execution_workers: int = Field(default=4, alias="EXECUTION_WORKERS")
    execution_cooldown_seconds: int = Field(default=0, alias="EXECUTION_COOLDOWN_SECONDS")  # 0 = retry on every tick
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    reconnect_delay_seconds: float = Field(default=5.0, alias="RECONNECT_DELAY_SECONDS")

    # Logging / health
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    health_port: int = Field(default=8080, alias="HEALTH_PORT")

    @property
    def database_url(self) -> str:
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def watch_symbols(self) -> List[str]:
        raw = self.watch_symbols_raw.strip().strip("[]")
        symbols = (part.strip().strip("\"'").strip().upper() for part in raw.split(","))
        return [s for s in symbols if s]

    @property
    def telegram_enabled(self) -> bool:
        return all([self.telegram_bot_token, self.telegram_chat_id])

    @property
    def exchange_enabled(self) -> bool:
        return all([self.exchange_api_key, self.exchange_api_secret])

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
