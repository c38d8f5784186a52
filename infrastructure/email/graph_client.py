# infrastructure/email/graph_client.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote
import requests

from domain.errors import FolderNotFound, GraphRequestError, NotAuthenticated, TransientFetchError
from domain.models import AttachmentRecord, FetchCursor, LinkCursor, MessagePage, MessageRecord
from domain.ports import CredentialProvider

logger = logging.getLogger(__name__)

WELL_KNOWN_FOLDERS = {
    "inbox": "inbox",
    "sent": "sentitems",
    "sentitems": "sentitems",
    "drafts": "drafts",
    "deleted": "deleteditems",
    "deleteditems": "deleteditems",
    "junk": "junkemail",
    "junkemail": "junkemail",
    "archive": "archive",
    "outbox": "outbox",
}

MESSAGE_FIELDS = ",".join([
    "id", "subject", "from", "toRecipients", "ccRecipients", "bccRecipients", "replyTo",
    "receivedDateTime", "sentDateTime", "body", "hasAttachments", "internetMessageId",
    "conversationId", "importance", "isRead", "isDraft", "bodyPreview",
])
ATTACHMENT_FIELDS = "id,name,contentType,size,isInline,contentBytes,contentId"


def _retry_after(r: requests.Response) -> float | None:
    raw = r.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


class GraphMailClient:
    def __init__(
        self,
        *,
        credentials: CredentialProvider,
        base: str = "https://graph.microsoft.com/v1.0",
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ) -> None:
        self.credentials = credentials
        self.base = base.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    # ───────── auth ─────────
    def _headers(self, extra: Dict[str, str] | None = None) -> Dict[str, str]:
        # el token nunca se guarda aquí: se pide al proveedor en cada request
        headers = {
            "Authorization": f"Bearer {self.credentials.get_access_token()}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    # ───────── HTTP helpers ─────────
    def _send(self, url: str, params: Dict[str, Any] | None, extra: Dict[str, str] | None) -> requests.Response:
        try:
            return self.session.get(url, headers=self._headers(extra), params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientFetchError(f"Fallo de red en GET {url}", cause=e) from e

    def _request(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        extra: Dict[str, str] | None = None,
    ) -> requests.Response:
        r = self._send(url, params, extra)
        if r.status_code == 401:
            # Token caducado → forzamos refresh y reintentamos UNA vez
            self.credentials.invalidate()
            r = self._send(url, params, extra)
            if r.status_code == 401:
                raise NotAuthenticated("Graph rechazó el token de acceso (401); vuelve a autenticarte")
        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            if r.status_code == 429 or r.status_code >= 500:
                raise TransientFetchError(
                    f"Graph respondió {r.status_code} en GET {url}",
                    cause=e,
                    status_code=r.status_code,
                    retry_after=_retry_after(r),
                ) from e
            raise GraphRequestError(
                f"Graph respondió {r.status_code} en GET {url}", cause=e, status_code=r.status_code
            ) from e
        return r

    def _get(self, url: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        r = self._request(url, params=params)
        try:
            return r.json()
        except ValueError as e:
            raise GraphRequestError(f"Respuesta no JSON en GET {url}", cause=e, status_code=r.status_code) from e

    def _folder_get(self, folder_label: str, url: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            return self._get(url, params=params)
        except GraphRequestError as e:
            if e.status_code == 404:
                raise FolderNotFound(f"No existe la carpeta '{folder_label}'", cause=e) from e
            raise

    # ───────── folders ─────────
    def _find_child(self, label: str, url: str, name: str) -> str:
        escaped = name.replace("'", "''")
        found = self._folder_get(
            label, url, params={"$filter": f"displayName eq '{escaped}'", "$select": "id,displayName"}
        ).get("value", [])
        if len(found) != 1:
            raise FolderNotFound(f"La carpeta '{label}' tiene {len(found)} coincidencias (se esperaba 1)")
        return found[0]["id"]

    def resolve_folder_id(self, folder: str) -> str:
        """
        'inbox', 'sent', … se traducen a los nombres bien conocidos de Graph.
        El resto se busca por displayName; admite rutas 'Padre/Hija'.
        """
        parts = [p.strip() for p in (folder or "").split("/") if p.strip()]
        if not parts:
            raise FolderNotFound("Nombre de carpeta vacío")

        root_seg = parts[0]
        if len(parts) == 1 and root_seg.lower() in WELL_KNOWN_FOLDERS:
            return WELL_KNOWN_FOLDERS[root_seg.lower()]

        if root_seg.lower() in WELL_KNOWN_FOLDERS:
            current_id = WELL_KNOWN_FOLDERS[root_seg.lower()]
        else:
            current_id = self._find_child(folder, f"{self.base}/me/mailFolders", root_seg)

        for name in parts[1:]:
            current_id = self._find_child(folder, f"{self.base}/me/mailFolders/{current_id}/childFolders", name)
        return current_id

    # ───────── count / list / attachments ─────────
    def count_messages(self, folder_id: str, odata_filter: str | None = None) -> int:
        url = f"{self.base}/me/mailFolders/{folder_id}/messages/$count"
        params = {"$filter": odata_filter} if odata_filter else None
        try:
            r = self._request(url, params=params, extra={"ConsistencyLevel": "eventual"})
        except GraphRequestError as e:
            if e.status_code == 404:
                raise FolderNotFound(f"No existe la carpeta '{folder_id}'", cause=e) from e
            raise
        try:
            return int((r.text or "0").strip())
        except ValueError:
            # el total es orientativo: si no se entiende, no bloquea la descarga
            logger.warning("Recuento no numérico de Graph: %r", (r.text or "")[:80])
            return 0

    def list_messages(
        self,
        folder_id: str,
        *,
        top: int,
        cursor: FetchCursor,
        odata_filter: str | None = None,
    ) -> MessagePage:
        if isinstance(cursor, LinkCursor):
            data = self._folder_get(folder_id, cursor.url)
        else:
            url = f"{self.base}/me/mailFolders/{folder_id}/messages"
            params: Dict[str, Any] = {
                "$select": MESSAGE_FIELDS,
                "$orderby": "receivedDateTime desc",
                "$top": top,
            }
            if odata_filter:
                params["$filter"] = odata_filter
            if cursor.skip:
                params["$skip"] = cursor.skip
            data = self._folder_get(folder_id, url, params=params)

        items = data.get("value", [])
        records: List[MessageRecord] = []
        for it in items:
            try:
                records.append(MessageRecord.from_graph(it))
            except (ValueError, TypeError) as e:
                logger.warning("Mensaje descartado (formato inesperado): %s", e)
        return MessagePage(records=records, returned=len(items), next_link=data.get("@odata.nextLink"))

    def get_message_attachments(self, message_id: str) -> List[AttachmentRecord]:
        url = f"{self.base}/me/messages/{quote(message_id, safe='')}/attachments"
        data = self._get(url, params={"$select": ATTACHMENT_FIELDS})
        attachments: List[AttachmentRecord] = []
        for a in data.get("value", []):
            try:
                attachments.append(AttachmentRecord.from_graph(a))
            except (ValueError, TypeError) as e:
                logger.warning("Adjunto de %s descartado (formato inesperado): %s", message_id, e)
        return attachments

    def get_me(self) -> Dict[str, Any]:
        return self._get(f"{self.base}/me", params={"$select": "id,displayName,mail,userPrincipalName"})
