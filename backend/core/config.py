import os
from typing import Literal
from dotenv import load_dotenv
import logging


logger = logging.getLogger(__name__)

# Load environment variables from .env file located in the parent directory
# Environment variables explicitly set (e.g., by Docker Compose) take precedence.
BASE_DIR = os.path.dirname(os.path.dirname(__file__))
ENV_PATH = os.path.join(BASE_DIR, '.env')
load_dotenv(ENV_PATH)


class Settings:
    # --- General Environment Settings ---
    # ENVIRONMENT determines application behavior (e.g., logging level, SQL echo).
    ENVIRONMENT: Literal["local", "staging",
                         "production", "test"] = os.getenv('ENVIRONMENT', 'local')
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')

    # --- PostgreSQL Database Configuration ---
    # Defaults are set for local Docker Compose setup.
    POSTGRES_USER: str = os.getenv('POSTGRES_USER', 'storefront')
    POSTGRES_PASSWORD: str = os.getenv('POSTGRES_PASSWORD', 'storefront_password')
    POSTGRES_SERVER: str = os.getenv('POSTGRES_SERVER', 'postgres')
    POSTGRES_PORT: int = int(os.getenv('POSTGRES_PORT', 5432))
    POSTGRES_DB: str = os.getenv('POSTGRES_DB', 'storefront_db')

    # Full database URL. Takes precedence over the individual components when set.
    POSTGRES_DB_URL: str = os.getenv('POSTGRES_DB_URL', "")

    # --- Order lifecycle ---
    # Days after delivery during which a customer may request a return.
    RETURN_WINDOW_DAYS: int = int(os.getenv('RETURN_WINDOW_DAYS', 7))
    # Orders whose post-offer amount reaches this threshold ship for free.
    FREE_SHIPPING_THRESHOLD: float = float(os.getenv('FREE_SHIPPING_THRESHOLD', 500))
    SHIPPING_CHARGE: float = float(os.getenv('SHIPPING_CHARGE', 50))
    # Cash on Delivery is refused above this final amount.
    COD_LIMIT: float = float(os.getenv('COD_LIMIT', 2000))
    CURRENCY: str = os.getenv('CURRENCY', 'INR')

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.POSTGRES_DB_URL:
            # Convert standard postgresql:// URLs to the asyncpg driver
            if self.POSTGRES_DB_URL.startswith('postgresql://'):
                return self.POSTGRES_DB_URL.replace('postgresql://', 'postgresql+asyncpg://', 1)
            return self.POSTGRES_DB_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def is_local(self) -> bool:
        return self.ENVIRONMENT == "local"


# Instantiate the settings object to be used throughout the application
settings = Settings()
