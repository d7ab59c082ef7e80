import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./chat_orders.db"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    rabbitmq_url: Optional[str] = None
    verify_token: Optional[str] = None
    whatsapp_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    graph_api_version: str = "v18.0"
    processing_timeout: float = 10.0
    ledger_wait_timeout: float = 5.0
    ledger_claim_ttl: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            rabbitmq_url=os.getenv("RABBITMQ_URL") or None,
            verify_token=os.getenv("VERIFY_TOKEN") or None,
            whatsapp_token=os.getenv("WHATSAPP_TOKEN") or None,
            phone_number_id=os.getenv("PHONE_NUMBER_ID") or None,
            graph_api_version=os.getenv("GRAPH_API_VERSION", "v18.0"),
            processing_timeout=_float_env("PROCESSING_TIMEOUT", 10.0),
            ledger_wait_timeout=_float_env("LEDGER_WAIT_TIMEOUT", 5.0),
            ledger_claim_ttl=_float_env("LEDGER_CLAIM_TTL", 60.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
