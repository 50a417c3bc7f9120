import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "LibManager Pro")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    seed_on_init: bool = _env_flag("LIBRARY_SEED", "True")

    # Security
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Lending rules (currency in the smallest unit)
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "5000"))
    lost_book_fine: int = int(os.getenv("LOST_BOOK_FINE", "200000"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "3"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))

    # Reports
    report_months: int = int(os.getenv("REPORT_MONTHS", "6"))


settings = Settings()
