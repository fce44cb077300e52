from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database
    TICKETDESK_DB_URL: str = "sqlite:///./ticketdesk.db"

    # Files: stored paths like "/uploads/x.png" are relative to this directory
    TICKETDESK_PUBLIC_DIR: str = "./public"

    # QR payload is "<register url>?token=<ticket token>"
    TICKETDESK_REGISTER_URL: str = "http://localhost:3000/register"

    # Rendering
    TICKETDESK_MAX_TICKETS_PER_BATCH: int = 1000
    TICKETDESK_RENDER_WORKERS: int = 4

    # Logging
    TICKETDESK_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
