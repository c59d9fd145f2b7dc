import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices

ROOT = Path(__file__).resolve().parents[2]
load_dotenv(ROOT / ".env", override=False)     # loads GCP / FIREBASE / SHEET vars


class Settings(BaseSettings):
    # ───────────────── GCP / Firestore / Cloud Storage ───────────────
    gcp_project: str | None = Field(
        None,
        validation_alias=AliasChoices(
            "GCP_PROJECT_ID",
            "GCLOUD_PROJECT",
            "GOOGLE_CLOUD_PROJECT",
        ),
    )
    gcs_bucket: str | None = Field(
        None,
        validation_alias=AliasChoices("GCS_BUCKET", "GOOGLE_CLOUD_STORAGE_BUCKET"),
    )
    gcp_credentials_path: str | None = Field(
        None,
        validation_alias=AliasChoices("GOOGLE_APPLICATION_CREDENTIALS", "GCP_CREDENTIALS"),
    )

    # Firebase Auth (Admin SDK). Off → every request resolves to "no identity".
    firebase_enabled: bool = Field(True, validation_alias="FIREBASE_ENABLED")

    # ───────────────── Session JWT ─────────
    jwt_secret: str = Field("dev-secret", validation_alias="JWT_SECRET")
    jwt_alg: str = "HS256"
    access_ttl_h: int = Field(24, validation_alias="ACCESS_TTL_H")

    ui_origin: str = Field(
        "http://localhost:8080",
        validation_alias=AliasChoices("UI_ORIGIN"),
    )

    # Resend
    resend_api_key: str | None = Field(None, validation_alias="RESEND_API_KEY")
    resend_domain: str = Field("elpasoverse.com", validation_alias="RESEND_DOMAIN")

    # Google Sheets webhook (Apps Script)
    sheet_webhook_url: str | None = Field(None, validation_alias="SHEET_WEBHOOK_URL")
    sheet_secret: str = Field("elpaso-paso-logger-2024", validation_alias="SHEET_SECRET_KEY")

    # reCAPTCHA (server-side verification; unset → signup allowed without it)
    recaptcha_secret: str | None = Field(None, validation_alias="RECAPTCHA_SECRET")

    # ───────────────── PASO credits & signup protection ─────────────────
    signup_bonus: int = Field(25, validation_alias="SIGNUP_BONUS")
    max_signups_per_ip: int = Field(3, validation_alias="MAX_SIGNUPS_PER_IP")
    signup_window_hours: int = Field(24, validation_alias="SIGNUP_WINDOW_HOURS")
    http_timeout_s: float = Field(5.0, validation_alias="HTTP_TIMEOUT_S")

    # ───────────────── Community ─────────────────
    land_vote_targets: dict[str, str] = Field(
        {
            "verse-hotel": '"Verse Hotel" Almeria',
            "western-leone": "Western Leone",
            "rio-texaco": "Rio Texaco",
        },
        validation_alias="LAND_VOTE_TARGETS",
    )
    support_goal: int = Field(1000, validation_alias="IDEA_SUPPORT_GOAL")
    idea_image_max_bytes: int = Field(2 * 1024 * 1024, validation_alias="IDEA_IMAGE_MAX_BYTES")

    # ───────────────── Cardano PASO token ─────────────────
    paso_policy_id: str = Field(
        "0b0d0c5a1acd08efde911a8466fc1bbd5b09d2de87b2ccb809d64b01",
        validation_alias="PASO_POLICY_ID",
    )
    paso_asset_name: str = Field("5041534f", validation_alias="PASO_ASSET_NAME")  # "PASO"

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(case_sensitive=False, env_file='.env', extra='allow')

    @property
    def firestore_configured(self) -> bool:
        return bool(self.gcp_project or self.gcp_credentials_path)


settings = Settings()

if settings.gcp_credentials_path:
    os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", settings.gcp_credentials_path)
