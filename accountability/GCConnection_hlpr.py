import os
import logging
from typing import Callable

from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("accountability_backend")


class GCConnection:
    def __init__(self) -> None:
        # ---- env config (shared) ----
        self.PROJECT_ID   = os.getenv("PROJECT_ID", "")
        self.DB_HOST      = os.getenv("DB_HOST", "localhost")
        self.DB_PORT      = int(os.getenv("DB_PORT", "5432"))
        self.DB_NAME      = os.getenv("DB_NAME", "")
        self.DB_USER      = os.getenv("DB_USER", "")
        self.DB_PASSWORD  = os.getenv("DB_PASSWORD", "")
        self.DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

        self.secret_client = None

        # !###############################################
        # !   YOU CONNECT DIRECTLY TO CLOUD SQL OR USE A
        # !   DATABASE_URL IN THE .ENV FILE
        # !###############################################
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")
        self.IS_LOCAL = bool(self.DATABASE_URL)
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+pg8000://{self.DB_USER}:{self._get_db_password_lazy()}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )

    # -------- GCP auth / creds --------
    def _build_creds(self):
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        creds, _ = google_auth_default(scopes=scopes)
        return creds

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            if self.secret_client is None:
                self.secret_client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = self.secret_client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = self.secret_client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    # -------- Engine --------
    def build_engine(self) -> Engine:
        if not getattr(self, "_engine", None):
            if self.DATABASE_URL.startswith("postgresql+pg8000"):
                # pg8000 supports 'timeout' in seconds
                self._engine = create_engine(
                    self.DATABASE_URL,
                    future=True,
                    pool_pre_ping=True,
                    connect_args={"timeout": 10},  # fail in 10s instead of hanging forever
                )
            else:
                self._engine = create_engine(self.DATABASE_URL, future=True, pool_pre_ping=True)
            logger.info("[DB] Engine ready, dialect=%s local=%s", self._engine.dialect.name, self.IS_LOCAL)
        return self._engine

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if not getattr(self, "_sessionmaker", None):
            self._sessionmaker = sessionmaker(
                bind=self.build_engine(),
                autoflush=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
