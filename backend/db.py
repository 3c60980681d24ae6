from pydantic_settings import BaseSettings
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

class Settings(BaseSettings):
    DATABASE_URL: str = ""

    MYSQL_HOST: str = "127.0.0.1"
    MYSQL_PORT: int = 3306
    MYSQL_USER: str = "root"
    MYSQL_PASSWORD: str = ""
    MYSQL_DB: str = "athenaeum"

    JWT_SECRET: str = "please_change_me"
    JWT_EXPIRE_MINUTES: int = 720

    ADMIN_EMAIL: str = ""
    ADMIN_PASSWORD: str = ""
    ADMIN_NAME: str = "Library Admin"

    EMAIL_HOST: str = "smtp.gmail.com"
    EMAIL_PORT: int = 465
    EMAIL_USER: str = ""
    EMAIL_PASS: str = ""
    EMAIL_USE_SSL: bool = True

    NOTIFY_SCHEDULER_ENABLED: bool = False
    NOTIFY_HOUR: int = 9

    ALGOLIA_APP_ID: str = ""
    ALGOLIA_ADMIN_KEY: str = ""
    ALGOLIA_INDEX: str = "books_index"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

def database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"mysql+pymysql://{settings.MYSQL_USER}:{settings.MYSQL_PASSWORD}"
        f"@{settings.MYSQL_HOST}:{settings.MYSQL_PORT}/{settings.MYSQL_DB}"
        "?charset=utf8mb4"
    )

DSN = database_url()

if DSN.startswith("sqlite"):
    engine = create_engine(DSN, connect_args={"check_same_thread": False}, echo=False)
else:
    engine = create_engine(DSN, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

class Base(DeclarativeBase):
    pass

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
