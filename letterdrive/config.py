from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Google OAuth client, from the API Console
    google_client_id: str = ""
    google_client_secret: str = ""
    # Must exactly match one of the authorized redirect URIs of the client
    callback_url: str = "http://localhost:5000/auth/google/callback"

    session_secret: str = "change-me-in-production"
    # Server-side session store; the cookie only carries the session id
    session_cache_dir: str = "flask_session"
    session_cache_threshold: int = 500
    session_cookie_name: str = "session"
    session_cookie_secure: bool = False

    # Emails ending with this suffix get the admin role at login
    admin_email_suffix: str = "@admin.com"

    # Browser origin allowed to call the API with credentials
    allowed_origin: str = "http://localhost:3000"

    # Redirect targets after the OAuth callback. Empty means the built-in views.
    dashboard_url: Optional[str] = None
    login_url: Optional[str] = None

    revoke_on_logout: bool = False

    # Only for local http testing, never in production
    oauthlib_insecure_transport: bool = False

    host: str = "localhost"
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
