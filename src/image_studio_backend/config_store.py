"""
SQLite store of backend API configurations.

Operators register named configurations (shared API key, gateway URL and a
model name / enabled flag per backend) and activate exactly one of them. The
store is itself a ConfigurationProvider: active_configuration() returns the
active row as an ActiveConfiguration.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .configuration import ActiveConfiguration, BackendSettings
from .errors import RequestValidationError, ResourceNotFoundError
from .utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MODELS: Dict[str, str] = {
    "gemini": "gemini-2.5-flash-image-preview",
    "chatgpt": "gpt-4o-image-vip",
    "sora": "sora_image",
}


def mask_api_key(api_key: str) -> str:
    """
    Hide all but the edges of a credential.

    Example:
        >>> mask_api_key("sk-1234567890abcdef")
        'sk-1...cdef'
    """
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


@dataclass
class ApiConfigRecord:
    id: str
    name: str
    api_key: str
    base_url: str
    backends: Dict[str, BackendSettings]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_tested_at: Optional[datetime] = None
    test_results: Optional[Dict[str, Any]] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "api_key_masked": mask_api_key(self.api_key),
            "base_url": self.base_url,
            "backends": {
                backend_id: {"enabled": settings.enabled, "model_name": settings.model_name}
                for backend_id, settings in self.backends.items()
            },
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_active_configuration(self) -> ActiveConfiguration:
        return ActiveConfiguration(
            name=self.name,
            api_key=self.api_key,
            base_url=self.base_url,
            backends=dict(self.backends),
            source="database",
        )


class ApiConfigStore:
    """
    Manages backend API configurations in a local SQLite database.

    Credentials are stored as supplied; encrypting them at rest is left to
    the deployment (e.g. an encrypted volume).
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_configurations (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    api_key TEXT NOT NULL,
                    base_url TEXT NOT NULL,
                    backends_json TEXT NOT NULL DEFAULT '{}',
                    is_active BOOLEAN DEFAULT 0,
                    last_tested_at TEXT,
                    test_results_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_api_configs_active
                ON api_configurations(is_active) WHERE is_active = 1
            """)
            conn.commit()

    def create(
        self,
        name: str,
        api_key: str,
        base_url: str,
        backends: Optional[Dict[str, BackendSettings]] = None,
        activate: bool = False,
    ) -> ApiConfigRecord:
        """
        Register a configuration.

        Backends not listed are added disabled; an empty mapping enables every
        known backend with its default model.
        """
        if backends:
            settings = {backend_id: BackendSettings(False) for backend_id in DEFAULT_MODELS}
            settings.update(backends)
        else:
            settings = {backend_id: BackendSettings(True, model) for backend_id, model in DEFAULT_MODELS.items()}

        config_id = str(uuid4())
        now = utcnow().isoformat()
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    INSERT INTO api_configurations (id, name, api_key, base_url, backends_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (config_id, name, api_key, base_url, self._dump_backends(settings), now, now))
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise RequestValidationError(f"Configuration named {name} already exists") from exc

        logger.info(f"Created API configuration '{name}'")
        if activate:
            return self.activate(config_id)
        return self.get(config_id)

    def get(self, config_id: str) -> ApiConfigRecord:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM api_configurations WHERE id = ?", (config_id,)).fetchone()
        if row is None:
            raise ResourceNotFoundError("Configuration", config_id)
        return self._row_to_record(row)

    def list(self) -> List[ApiConfigRecord]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM api_configurations ORDER BY created_at DESC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def activate(self, config_id: str) -> ApiConfigRecord:
        """Make one configuration active and every other one inactive."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                exists = cursor.execute("SELECT 1 FROM api_configurations WHERE id = ?", (config_id,)).fetchone()
                if not exists:
                    raise ResourceNotFoundError("Configuration", config_id)
                now = utcnow().isoformat()
                cursor.execute("UPDATE api_configurations SET is_active = 0, updated_at = ? WHERE is_active = 1", (now,))
                cursor.execute("UPDATE api_configurations SET is_active = 1, updated_at = ? WHERE id = ?", (now, config_id))
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        record = self.get(config_id)
        logger.info(f"Activated API configuration '{record.name}'")
        return record

    def delete(self, config_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM api_configurations WHERE id = ?", (config_id,))
            conn.commit()
            return cursor.rowcount > 0

    def record_test_results(self, config_id: str, results: Dict[str, Any]) -> None:
        now = utcnow().isoformat()
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE api_configurations SET last_tested_at = ?, test_results_json = ?, updated_at = ? WHERE id = ?",
                (now, json.dumps(results), now, config_id),
            )
            conn.commit()

    def active_record(self) -> Optional[ApiConfigRecord]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM api_configurations WHERE is_active = 1").fetchone()
        return self._row_to_record(row) if row else None

    def active_configuration(self) -> Optional[ActiveConfiguration]:
        record = self.active_record()
        return record.to_active_configuration() if record else None

    @staticmethod
    def _dump_backends(backends: Dict[str, BackendSettings]) -> str:
        return json.dumps({
            backend_id: {"enabled": settings.enabled, "model_name": settings.model_name}
            for backend_id, settings in backends.items()
        })

    def _row_to_record(self, row: sqlite3.Row) -> ApiConfigRecord:
        backends = {
            backend_id: BackendSettings(bool(entry.get("enabled")), entry.get("model_name") or "")
            for backend_id, entry in json.loads(row["backends_json"] or "{}").items()
        }
        return ApiConfigRecord(
            id=row["id"],
            name=row["name"],
            api_key=row["api_key"],
            base_url=row["base_url"],
            backends=backends,
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            last_tested_at=datetime.fromisoformat(row["last_tested_at"]) if row["last_tested_at"] else None,
            test_results=json.loads(row["test_results_json"]) if row["test_results_json"] else None,
        )
