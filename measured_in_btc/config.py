import os
from dataclasses import dataclass, field
from typing import FrozenSet, List

from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment (and a local .env file)."""

    database_url: str = "sqlite+aiosqlite:///./measured_in_btc.db"
    sql_echo: bool = False
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    gold_api_url: str = "https://www.goldapi.io/api/XAU/USD"
    gold_api_key: str = ""
    price_cache_ttl_seconds: int = 300
    price_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            sql_echo=os.getenv("SQL_ECHO", "false").lower() == "true",
            admin_emails=frozenset(
                email.lower() for email in _split_csv(os.getenv("ADMIN_EMAILS", ""))
            ),
            cors_origins=_split_csv(os.getenv("CORS_ORIGINS", "*")) or ["*"],
            coingecko_api_url=os.getenv("COINGECKO_API_URL", defaults.coingecko_api_url).rstrip("/"),
            yahoo_chart_url=os.getenv("YAHOO_CHART_URL", defaults.yahoo_chart_url).rstrip("/"),
            gold_api_url=os.getenv("GOLD_API_URL", defaults.gold_api_url),
            gold_api_key=os.getenv("GOLD_API_KEY", ""),
            price_cache_ttl_seconds=int(os.getenv("PRICE_CACHE_TTL_SECONDS", "300")),
            price_timeout_seconds=float(os.getenv("PRICE_TIMEOUT_SECONDS", "10")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


settings = Settings.from_env()
