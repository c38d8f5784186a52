# config/settings.py
from __future__ import annotations
from dataclasses import dataclass, fields, replace
from pathlib import Path
import json
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# App pública de Microsoft Graph PowerShell: sirve para device-code sin registrar app propia.
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
DEFAULT_SCOPES = (
    "https://graph.microsoft.com/Mail.Read,"
    "https://graph.microsoft.com/Mail.ReadWrite,"
    "https://graph.microsoft.com/User.Read,"
    "https://graph.microsoft.com/MailboxSettings.Read"
)

# claves del config.json (formato histórico en camelCase) → campo de Settings
_CONFIG_KEYS = {
    "clientId": "GRAPH_CLIENT_ID",
    "tenantId": "GRAPH_TENANT_ID",
    "scopes": "GRAPH_SCOPES",
    "graphBase": "GRAPH_BASE",
    "batchSize": "BATCH_SIZE",
    "attachmentWorkers": "ATTACHMENT_WORKERS",
    "fetchRetries": "FETCH_RETRIES",
    "retryBackoff": "RETRY_BACKOFF",
    "requestTimeout": "REQUEST_TIMEOUT",
    "stagingDir": "STAGING_DIR",
    "logLevel": "LOG_LEVEL",
}


@dataclass(frozen=True)
class Settings:
    # GRAPH / MSAL
    GRAPH_CLIENT_ID: str = os.getenv("GRAPH_CLIENT_ID", DEFAULT_CLIENT_ID)
    GRAPH_TENANT_ID: str = os.getenv("GRAPH_TENANT_ID", "common")
    GRAPH_SCOPES: str = os.getenv("GRAPH_SCOPES", DEFAULT_SCOPES)
    GRAPH_BASE: str = os.getenv("GRAPH_BASE", "https://graph.microsoft.com/v1.0")
    EXPORT_MAIL_HOME: str = os.getenv("EXPORT_MAIL_HOME", str(Path.home() / ".export-mail"))

    # Descarga
    BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", 50))
    ATTACHMENT_WORKERS: int = int(os.getenv("ATTACHMENT_WORKERS", 8))
    FETCH_RETRIES: int = int(os.getenv("FETCH_RETRIES", 3))
    RETRY_BACKOFF: float = float(os.getenv("RETRY_BACKOFF", "2.0"))
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", 30))

    # Staging del comando 'full' (se conserva si algo falla, para reanudar)
    STAGING_DIR: str = os.getenv("STAGING_DIR", "./temp-emails")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ───────── helpers ─────────
    def scopes(self) -> list[str]:
        raw = self.GRAPH_SCOPES
        if isinstance(raw, (list, tuple)):
            return [s.strip() for s in raw if s and s.strip()]
        return [s.strip() for s in (raw or "").split(",") if s.strip()]

    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.GRAPH_TENANT_ID}"

    def home_path(self) -> Path:
        return Path(self.EXPORT_MAIL_HOME).expanduser()

    def config_file(self) -> Path:
        return self.home_path() / "config.json"

    def token_cache_path(self) -> Path:
        return self.home_path() / "token-cache.bin"

    def staging_path(self) -> Path:
        return Path(self.STAGING_DIR).expanduser()

    def attachment_workers(self) -> int:
        # nunca más hilos que mensajes por página
        return max(1, min(self.ATTACHMENT_WORKERS, self.BATCH_SIZE))

    def validate(self) -> list[str]:
        problems: list[str] = []
        if not self.GRAPH_CLIENT_ID:
            problems.append("GRAPH_CLIENT_ID vacío")
        if not self.GRAPH_TENANT_ID:
            problems.append("GRAPH_TENANT_ID vacío")
        if not self.scopes():
            problems.append("GRAPH_SCOPES sin scopes")
        if self.BATCH_SIZE <= 0:
            problems.append("BATCH_SIZE debe ser > 0")
        if self.FETCH_RETRIES <= 0:
            problems.append("FETCH_RETRIES debe ser > 0")
        return problems


def load_settings(config_path: Path | None = None, base: Settings | None = None) -> Settings:
    """
    Settings del entorno (.env incluido) + overrides de <home>/config.json.
    Un config.json ilegible no es fatal: se avisa y se siguen usando los defaults.
    """
    settings = base or Settings()
    path = config_path or settings.config_file()
    if not path.exists():
        return settings
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("No se pudo leer %s, se usan valores por defecto: %s", path, e)
        return settings
    if not isinstance(data, dict):
        logger.warning("Config %s ignorada: se esperaba un objeto JSON", path)
        return settings

    known = {f.name for f in fields(Settings)}
    overrides: dict[str, object] = {}
    for key, value in data.items():
        name = _CONFIG_KEYS.get(key, key if key in known else None)
        if name is None:
            logger.debug("Clave de config desconocida: %s", key)
            continue
        if name == "GRAPH_SCOPES" and isinstance(value, list):
            value = ",".join(str(v) for v in value)
        current = getattr(settings, name)
        try:
            overrides[name] = type(current)(value)
        except (TypeError, ValueError):
            logger.warning("Valor inválido para %s en %s: %r", key, path, value)
    return replace(settings, **overrides)
