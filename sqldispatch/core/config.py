from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url


class Settings(BaseSettings):
    # A full SQLAlchemy URL wins over the individual DB_* parts
    DATABASE_URL: Optional[str] = None

    DB_DRIVER: str = "mysql+aiomysql"
    DB_HOST: str = "localhost"
    DB_PORT: Optional[int] = None
    DB_USER: str = "root"
    DB_PASSWORD: str = ""
    DB_NAME: Optional[str] = None
    DB_CHARSET: str = "utf8mb4"
    DB_CONNECT_TIMEOUT: int = 1

    SQL_ECHO: bool = False
    ALLOW_RAW_QUERIES: bool = True
    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def database_url(self) -> URL:
        if self.DATABASE_URL:
            return make_url(self.DATABASE_URL)
        return URL.create(
            self.DB_DRIVER,
            username=self.DB_USER,
            password=self.DB_PASSWORD or None,
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.DB_NAME,
        )


# Create a single instance of the settings to use everywhere
settings = Settings()
