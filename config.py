import os
from dotenv import load_dotenv
load_dotenv()


def _flag(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///qadesk.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTO_CREATE_TABLES = _flag("AUTO_CREATE_TABLES", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    WTF_CSRF_ENABLED = _flag("WTF_CSRF_ENABLED", False)
    MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))

    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
    MAIL_FROM = os.getenv("MAIL_FROM", "noreply@example.com")
    MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "Quality Team")
    FEEDBACK_NOTIFICATIONS = _flag("FEEDBACK_NOTIFICATIONS", True)

    # azure | s3 | local
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "azure")
    AZURE_STORAGE_ACCOUNT_NAME = os.getenv("AZURE_STORAGE_ACCOUNT_NAME")
    AZURE_STORAGE_ACCOUNT_KEY = os.getenv("AZURE_STORAGE_ACCOUNT_KEY")
    AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
    S3_ENDPOINT = os.getenv("S3_ENDPOINT")
    S3_REGION = os.getenv("S3_REGION")
    S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
    S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
    LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "./storage")
    LOCAL_BLOB_BASE_URL = os.getenv("LOCAL_BLOB_BASE_URL", "http://localhost:5000/local-blobs")

    # signed read URLs for playback and for imported files
    SAS_EXPIRY_MINUTES = int(os.getenv("SAS_EXPIRY_MINUTES", "240"))
    IMPORT_SAS_EXPIRY_MINUTES = int(os.getenv("IMPORT_SAS_EXPIRY_MINUTES", "1440"))

    ALLOCATION_SHUFFLE = _flag("ALLOCATION_SHUFFLE", False)
    ALLOCATION_SEED = int(os.environ["ALLOCATION_SEED"]) if os.getenv("ALLOCATION_SEED") else None
