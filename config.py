from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Required: no defaults, startup fails without them
    BOT_TOKEN: str
    WEBAPP_URL: str

    # Platform
    ADMIN_IDS: str = ""
    DATABASE_URL: str = "sqlite+aiosqlite:///./casino.db"
    SECRET_KEY: str = "change_me_to_random_string"
    BOT_POLLING: bool = True
    LOG_LEVEL: str = "INFO"

    # Money limits, KES
    MIN_BET: Decimal = Decimal("10")
    MAX_BET: Decimal = Decimal("100000")
    MIN_DEPOSIT: Decimal = Decimal("200")
    MAX_DEPOSIT: Decimal = Decimal("100000")
    MIN_WITHDRAWAL: Decimal = Decimal("100")

    # Crash
    CRASH_HOUSE_EDGE: float = 0.04
    CRASH_NUMERATOR: float = 0.99
    CRASH_MAX_MULTIPLIER: float = 100.0
    CRASH_BETTING_SECONDS: float = 5.0
    CRASH_COOLDOWN_SECONDS: float = 3.0
    CRASH_TICK_SECONDS: float = 0.05
    CRASH_HISTORY_SIZE: int = 10
    # settlement retries on top of the ledger retries, before an owed amount is only logged
    CRASH_SETTLEMENT_RETRIES: int = 5
    CRASH_SETTLEMENT_DELAY: float = 0.5

    # Mines
    MINES_GRID_SIZE: int = 25
    MINES_HOUSE_EDGE: float = 0.03
    MINES_MAX_MULTIPLIER: float = 25.0
    MINES_DEFAULT_COUNT: int = 5

    # Bonuses
    WELCOME_BONUS_ENABLED: bool = True
    WELCOME_BONUS_AMOUNT: Decimal = Decimal("100")

    # Ledger retries on transient database errors
    LEDGER_RETRIES: int = 3
    LEDGER_RETRY_DELAY: float = 0.05

    # "123,456" -> [123, 456]
    @property
    def admin_ids_list(self) -> List[int]:
        if not self.ADMIN_IDS:
            return []
        return [int(x) for x in self.ADMIN_IDS.split(",") if x.strip().isdigit()]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
