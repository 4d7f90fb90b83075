import os
from decimal import Decimal, InvalidOperation
from typing import List

DEFAULT_TABLES = ["products", "transactions", "suppliers", "users", "referrals", "businesses"]


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            v = float(raw)
        except ValueError:
            return default
        return v if v > 0 else default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip() or default
        try:
            v = Decimal(raw)
        except InvalidOperation:
            v = Decimal(default)
        return v if v >= 0 else Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.database_url = os.getenv("POS_DATABASE_URL", "postgresql://localhost/pos_terminal")
        self.cache_path = os.getenv("POS_CACHE_PATH", "pos_cache.sqlite").strip() or "pos_cache.sqlite"
        # Hung remote calls must not keep a terminal in PROCESSING.
        self.remote_timeout_s = self._env_float("POS_REMOTE_TIMEOUT_S", 10.0)
        # Fraction, not percent: 0.12 == 12% VAT.
        self.tax_rate = self._env_decimal("POS_TAX_RATE", "0.12")
        self.default_discount = self._env_decimal("POS_DEFAULT_DISCOUNT", "0")
        self.monitored_tables = self._split_csv(
            os.getenv("POS_MONITORED_TABLES", "").strip(),
            default=list(DEFAULT_TABLES),
        )


settings = Settings()
