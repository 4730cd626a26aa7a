from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # S3O authority
    S3O_BASE_URL: str = "https://s3o.ft.com"
    S3O_PUBLIC_KEY_PATH: str = "/publickey"
    S3O_AUTHENTICATE_PATH: str = "/v2/authenticate/"

    # how often the background loop re-fetches the public key (seconds)
    KEY_REFRESH_SECONDS: float = 300.0

    # lifetime of the s3o_username / s3o_token cookies
    COOKIE_MAX_AGE_SECONDS: int = 900000

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("S3O_BASE_URL")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        # authority origin; paths are appended to it
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)
        if p.scheme not in ("http", "https") or not p.netloc:
            raise ValueError("S3O_BASE_URL must be an http(s) URL")
        return v

    @field_validator("S3O_PUBLIC_KEY_PATH", "S3O_AUTHENTICATE_PATH")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("path cannot be empty")
        if not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("KEY_REFRESH_SECONDS")
    @classmethod
    def positive_refresh(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("KEY_REFRESH_SECONDS must be > 0")
        return v

    @field_validator("COOKIE_MAX_AGE_SECONDS")
    @classmethod
    def positive_max_age(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("COOKIE_MAX_AGE_SECONDS must be > 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().upper() or "INFO"

    @property
    def public_key_url(self) -> str:
        return self.S3O_BASE_URL + self.S3O_PUBLIC_KEY_PATH

    @property
    def authenticate_url(self) -> str:
        return self.S3O_BASE_URL + self.S3O_AUTHENTICATE_PATH


settings = Settings()
