# infrastructure/auth/msal_credentials.py
from __future__ import annotations
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import msal

from config.settings import Settings
from domain.errors import NotAuthenticated

logger = logging.getLogger(__name__)


def _msal_error(result: Dict[str, Any] | None) -> str:
    result = result or {}
    return result.get("error_description") or result.get("error") or "sin detalle"


class MsalCredentialProvider:
    """
    Credenciales de usuario con device-code (MSAL) y caché de tokens en disco.
    get_access_token() nunca es interactivo: si no hay sesión lanza NotAuthenticated.
    """

    def __init__(
        self,
        *,
        client_id: str,
        authority: str,
        scopes: List[str],
        cache_path: Path,
        app: Optional[Any] = None,
    ) -> None:
        self.scopes = scopes
        self.cache_path = Path(cache_path)
        self.cache = msal.SerializableTokenCache()
        if self.cache_path.exists():
            try:
                self.cache.deserialize(self.cache_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Caché de tokens ilegible (%s); se ignora: %s", self.cache_path, e)
        self.app = app or msal.PublicClientApplication(
            client_id=client_id,
            authority=authority,
            token_cache=self.cache,
        )
        self._force_refresh = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "MsalCredentialProvider":
        return cls(
            client_id=settings.GRAPH_CLIENT_ID,
            authority=settings.authority(),
            scopes=settings.scopes(),
            cache_path=settings.token_cache_path(),
        )

    # ───────── caché ─────────
    def _save_cache(self) -> None:
        if not self.cache.has_state_changed:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(self.cache.serialize(), encoding="utf-8")
            os.chmod(self.cache_path, 0o600)
        except OSError as e:
            # el token sigue siendo válido en memoria para esta ejecución
            logger.warning("No se pudo guardar la caché de tokens en %s: %s", self.cache_path, e)

    # ───────── CredentialProvider ─────────
    def get_access_token(self) -> str:
        with self._lock:
            accounts = self.app.get_accounts()
            if not accounts:
                raise NotAuthenticated("No hay sesión iniciada; ejecuta 'auth'")
            result = self.app.acquire_token_silent(
                scopes=self.scopes, account=accounts[0], force_refresh=self._force_refresh
            )
            self._force_refresh = False
            if not result or "access_token" not in result:
                raise NotAuthenticated(
                    f"No se pudo renovar el token ({_msal_error(result)}); ejecuta 'auth'"
                )
            self._save_cache()
            return result["access_token"]

    def invalidate(self) -> None:
        with self._lock:
            self._force_refresh = True

    # ───────── sesión ─────────
    def authenticate(self, prompt: Callable[[str], None]) -> str:
        """
        Device-code flow: 'prompt' recibe el texto con la URL y el código
        que el usuario debe introducir. Devuelve el usuario autenticado.
        """
        flow = self.app.initiate_device_flow(scopes=self.scopes)
        if "user_code" not in flow:
            raise NotAuthenticated(f"No se pudo iniciar el device-code flow ({_msal_error(flow)})")
        prompt(flow["message"])
        result = self.app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            raise NotAuthenticated(f"Autenticación fallida ({_msal_error(result)})")
        self._save_cache()
        claims = result.get("id_token_claims") or {}
        return claims.get("preferred_username") or claims.get("name") or "desconocido"

    def is_authenticated(self) -> bool:
        try:
            self.get_access_token()
        except NotAuthenticated as e:
            logger.debug("Sin sesión válida: %s", e)
            return False
        return True

    def account_info(self) -> Dict[str, str] | None:
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        acc = accounts[0]
        return {"username": acc.get("username", ""), "home_account_id": acc.get("home_account_id", "")}

    def clear(self) -> None:
        for acc in self.app.get_accounts():
            self.app.remove_account(acc)
        if self.cache_path.exists():
            self.cache_path.unlink()
        logger.info("Caché de autenticación eliminada")
