from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

import pytest

from domain.errors import FolderNotFound, TransientFetchError
from domain.models import (
    AttachmentRecord,
    EmailAddress,
    FetchCursor,
    LinkCursor,
    MessageBody,
    MessagePage,
    MessageRecord,
)

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def graph_item(index: int, *, has_attachments: bool = False, subject: str | None = None) -> dict:
    received = BASE_TIME - timedelta(minutes=index)
    return {
        "id": f"AAMk-{index:04d}",
        "subject": subject if subject is not None else f"Mensaje {index}",
        "from": {"emailAddress": {"name": f"Remitente {index}", "address": f"user{index}@example.com"}},
        "toRecipients": [{"emailAddress": {"name": "Yo", "address": "me@example.com"}}],
        "receivedDateTime": received.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "sentDateTime": received.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "body": {"contentType": "text", "content": f"Cuerpo del mensaje {index}"},
        "hasAttachments": has_attachments,
        "isRead": True,
        "importance": "normal",
    }


class FakeMailbox:
    """Servidor de mentira: sirve items[skip:skip+top] como haría Graph con $top/$skip."""

    def __init__(
        self,
        items: List[dict],
        *,
        total: Optional[int] = None,
        folders: Optional[Dict[str, str]] = None,
        failing_attachments: Optional[Set[str]] = None,
        page_errors: Optional[Dict[int, Exception]] = None,
        use_next_link: bool = False,
    ) -> None:
        self.items = items
        self.total = len(items) if total is None else total
        self.folders = folders or {"inbox": "inbox"}
        self.failing_attachments = failing_attachments or set()
        self.page_errors = page_errors or {}
        self.use_next_link = use_next_link
        self.page_calls: List[tuple[int, FetchCursor]] = []
        self.attachment_calls: List[str] = []

    def resolve_folder_id(self, folder: str) -> str:
        try:
            return self.folders[folder.lower()]
        except KeyError:
            raise FolderNotFound(f"No existe la carpeta '{folder}'")

    def count_messages(self, folder_id: str, odata_filter: str | None = None) -> int:
        return self.total

    def list_messages(self, folder_id: str, *, top: int, cursor: FetchCursor, odata_filter=None) -> MessagePage:
        call_no = len(self.page_calls)
        self.page_calls.append((top, cursor))
        if call_no in self.page_errors:
            raise self.page_errors[call_no]
        if isinstance(cursor, LinkCursor):
            skip, top = [int(x) for x in cursor.url.rsplit("/", 2)[-2:]]
        else:
            skip = cursor.skip
        chunk = self.items[skip:skip + top]
        next_link = None
        if self.use_next_link and skip + top < len(self.items):
            next_link = f"https://graph.example/next/{skip + top}/{top}"
        return MessagePage(
            records=[MessageRecord.from_graph(it) for it in chunk],
            returned=len(chunk),
            next_link=next_link,
        )

    def get_message_attachments(self, message_id: str) -> List[AttachmentRecord]:
        self.attachment_calls.append(message_id)
        if message_id in self.failing_attachments:
            raise TransientFetchError(f"503 adjuntos de {message_id}", status_code=503)
        return [
            AttachmentRecord(
                id=f"att-{message_id}",
                filename="factura.pdf",
                mime_type="application/pdf",
                size_bytes=9,
                content_base64=base64.b64encode(b"%PDF-1.4\n").decode("ascii"),
            )
        ]


@pytest.fixture
def make_items() -> Callable[..., List[dict]]:
    def _factory(count: int, *, flagged: bool = False) -> List[dict]:
        return [graph_item(i, has_attachments=flagged) for i in range(count)]

    return _factory


@pytest.fixture
def make_record() -> Callable[..., MessageRecord]:
    def _factory(
        message_id: str = "msg-1",
        subject: str = "Asunto",
        body: str = "Hola\nQué tal",
        content_type: str = "text",
        sender: EmailAddress | None = EmailAddress("Ana", "ana@example.com"),
        attachments: List[AttachmentRecord] | None = None,
        received_at: datetime = BASE_TIME,
    ) -> MessageRecord:
        return MessageRecord(
            id=message_id,
            subject=subject,
            received_at=received_at,
            body=MessageBody(content_type=content_type, content=body),  # type: ignore[arg-type]
            sender=sender,
            to=[EmailAddress("Bea", "bea@example.com")],
            has_attachments=bool(attachments),
            attachments=list(attachments or []),
        )

    return _factory
