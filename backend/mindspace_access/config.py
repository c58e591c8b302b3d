from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./mindspace_access.db"
    JWT_SECRET: str = "mindspace-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Audit
    AUDIT_PERMISSION_CHECKS: bool = True
    AUDIT_MIRROR_PATH: str = ""

    # Rate limiting (requests per window, per role)
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_SUPER_ADMIN: int = 1000
    RATE_LIMIT_COMPANY_ADMIN: int = 500
    RATE_LIMIT_COMPANY_MANAGER: int = 300
    RATE_LIMIT_COMPANY_USER: int = 200
    RATE_LIMIT_INDIVIDUAL_USER: int = 100
    RATE_LIMIT_GUEST: int = 50

    class Config:
        env_file = ".env"


settings = Settings()
