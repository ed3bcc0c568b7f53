import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("LIBRARIAN_API_KEY", "change-me")

    # Database
    database_url: str = os.getenv(
        "LIBRARIAN_DATABASE_URL", "sqlite:///./librarian.db"
    )

    # Circulation
    fine_per_day: Decimal = Decimal(os.getenv("LIBRARIAN_FINE_PER_DAY", "1.00"))
    default_loan_days: int = int(os.getenv("LIBRARIAN_DEFAULT_LOAN_DAYS", "14"))

    # Pagination
    default_page_size: int = int(os.getenv("LIBRARIAN_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("LIBRARIAN_MAX_PAGE_SIZE", "100"))

    log_level: str = os.getenv("LIBRARIAN_LOG_LEVEL", "INFO")


settings = Settings()
