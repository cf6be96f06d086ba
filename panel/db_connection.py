# panel/db_connection.py
import logging
import os
from typing import Callable

from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from panel import config
from panel.entities import Base

logger = logging.getLogger("panel_backend")


class DbConnection:
    """
    Metadata store connection.

    Either DATABASE_URL is set (local runs, SQLite, any SQLAlchemy URL) or the
    DB_* settings describe a Postgres instance reached through pg8000, with the
    password read from Secret Manager when only DB_SECRET_ID is configured.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self.PROJECT_ID   = config.PROJECT_ID
        self.DB_HOST      = config.DB_HOST
        self.DB_PORT      = config.DB_PORT
        self.DB_NAME      = config.DB_NAME
        self.DB_USER      = config.DB_USER
        self.DB_PASSWORD  = config.DB_PASSWORD
        self.DB_SECRET_ID = config.DB_SECRET_ID

        self.DATABASE_URL = database_url or config.DATABASE_URL
        self.IS_LOCAL = bool(self.DATABASE_URL)
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

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
            client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def _database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        password = self._get_db_password_lazy()
        return f"postgresql+pg8000://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    def get_engine(self) -> Engine:
        if self._engine is not None:
            return self._engine

        url = self._database_url()
        if url.startswith("sqlite"):
            logger.info(f"[DB] Using SQLite URL: {url}")
            kwargs = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, or every session sees its own empty database
                kwargs["poolclass"] = StaticPool
            self._engine = create_engine(url, future=True, **kwargs)
        else:
            logger.info(f"[DB] Connecting to {url.split('://', 1)[0]} host={self.DB_HOST} db={self.DB_NAME}")
            connect_args = {}
            if url.startswith("postgresql+pg8000"):
                # pg8000 supports 'timeout' in seconds
                connect_args["timeout"] = 10  # fail in 10s instead of hanging forever
            self._engine = create_engine(
                url,
                future=True,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return self._engine

    def create_tables(self) -> None:
        Base.metadata.create_all(self.get_engine())

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
