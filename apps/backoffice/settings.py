from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


class Settings(BaseSettings):
    DATA_DIR: str = Field(default=os.getenv("DATA_DIR", "./data"))
    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    FRONTEND_BASE_URL: str = Field(default=os.getenv("FRONTEND_BASE_URL", "http://localhost:5173"))

    # Fact store backend: "firestore" (production) or "local" (JSON file under DATA_DIR).
    BILLING_STORE: str = Field(default=os.getenv("BILLING_STORE", "firestore"))
    # Service account JSON; when missing, Application Default Credentials are used.
    FIREBASE_CREDENTIALS_PATH: str = Field(
        default=os.getenv("FIREBASE_CREDENTIALS_PATH", str(_APPS_DIR / "serviceAccountKey.json"))
    )

    # ---------------------------------------------------------------------
    # OTR Solutions (factoring partner)
    #
    # Staging host until OTR approves test invoices; production is
    # https://services.otrsolutions.com/carrier-tms/2
    # ---------------------------------------------------------------------
    OTR_API_BASE_URL: str = Field(
        default=os.getenv("OTR_API_BASE_URL", "https://servicescstg.otrsolutions.com/carrier-tms/2")
    )
    OTR_API_KEY: str = Field(default=os.getenv("OTR_API_KEY", ""))
    # Token auth is optional; some OTR environments only need the subscription key.
    OTR_USERNAME: str = Field(default=os.getenv("OTR_USERNAME", ""))
    OTR_PASSWORD: str = Field(default=os.getenv("OTR_PASSWORD", ""))
    OTR_IS_TEST: bool = Field(default=_env_flag("OTR_IS_TEST", "true"))
    # Every OTR call (token, broker check, invoice post) is bounded by this timeout.
    OTR_TIMEOUT_SECONDS: float = Field(default=float(os.getenv("OTR_TIMEOUT_SECONDS", "20")))

    # "otr" talks to OTR Solutions, "mock" uses deterministic in-process stand-ins.
    CREDIT_CHECK_PROVIDER: str = Field(default=os.getenv("CREDIT_CHECK_PROVIDER", "otr"))
    FACTORING_PROVIDER: str = Field(default=os.getenv("FACTORING_PROVIDER", "otr"))
    FACTORING_COMPANY_NAME: str = Field(default=os.getenv("FACTORING_COMPANY_NAME", "OTR Solutions"))

    DEFAULT_PAYMENT_TERMS_DAYS: int = Field(default=int(os.getenv("DEFAULT_PAYMENT_TERMS_DAYS", "30")))

    # A submission claim older than this is considered abandoned (crashed worker).
    SUBMISSION_CLAIM_TTL_SECONDS: int = Field(default=int(os.getenv("SUBMISSION_CLAIM_TTL_SECONDS", "300")))

    # Email settings
    # If true, backend can send direct-email invoices via SMTP.
    ENABLE_INVOICE_EMAILS: bool = Field(default=_env_flag("ENABLE_INVOICE_EMAILS"))
    SMTP_SERVER: str = Field(default=os.getenv("SMTP_SERVER", "smtp.gmail.com"))
    SMTP_PORT: int = Field(default=int(os.getenv("SMTP_PORT", "587")))
    SMTP_USERNAME: str = Field(default=os.getenv("SMTP_USERNAME", ""))
    # Gmail app passwords are often copied with spaces; SMTP login expects the raw token.
    SMTP_PASSWORD: str = Field(default=os.getenv("SMTP_PASSWORD", "").strip().replace(" ", ""))
    EMAIL_FROM: str = Field(default=os.getenv("EMAIL_FROM", "billing@haulbill.app"))

    # Overdue sweep (sent invoices past due_date with a balance).
    ENABLE_OVERDUE_SCHEDULER: bool = Field(default=_env_flag("ENABLE_OVERDUE_SCHEDULER"))
    OVERDUE_CHECK_MINUTES: int = Field(default=int(os.getenv("OVERDUE_CHECK_MINUTES", str(60 * 24))))

    class Config:
        env_file = ".env"
        extra = "ignore"  # Ignore extra fields like VITE_API_URL


settings = Settings()
