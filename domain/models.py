# domain/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_graph_datetime(value: str | None) -> datetime | None:
    """
    Graph devuelve '2024-03-01T09:15:00Z' y a veces fracciones de 7 dígitos
    ('...00.1234567Z'), que fromisoformat no acepta: se recortan a 6.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"fecha con formato inesperado: {value!r}")
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    if "." in s:
        head, rest = s.split(".", 1)
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        s = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_graph_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# Los ficheros de staging se pueden editar a mano: un campo con otra forma
# se rechaza con ValueError para que el mensaje se omita y no rompa el lote.
def _object(value: Any, what: str) -> dict[str, Any]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{what}' debería ser un objeto, no {type(value).__name__}")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if not value:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{what}' debería ser una lista, no {type(value).__name__}")
    return value


def _text(value: Any, what: str) -> str:
    if not value:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"'{what}' debería ser texto, no {type(value).__name__}")
    return value


@dataclass
class EmailAddress:
    name: str
    address: str

    @classmethod
    def from_graph(cls, data: dict[str, Any] | None) -> "EmailAddress | None":
        # Graph: {"emailAddress": {"name": ..., "address": ...}}
        inner = _object(_object(data, "dirección").get("emailAddress"), "emailAddress")
        name = _text(inner.get("name"), "name").strip()
        address = _text(inner.get("address"), "address").strip()
        if not name and not address:
            return None
        return cls(name=name, address=address)

    def to_graph(self) -> dict[str, Any]:
        return {"emailAddress": {"name": self.name, "address": self.address}}


def _addresses(items: Any, what: str) -> list[EmailAddress]:
    out: list[EmailAddress] = []
    for it in _array(items, what):
        addr = EmailAddress.from_graph(it)
        if addr:
            out.append(addr)
    return out


@dataclass
class MessageBody:
    content_type: Literal["text", "html"]
    content: str

    @classmethod
    def from_graph(cls, data: dict[str, Any] | None) -> "MessageBody":
        data = _object(data, "body")
        ctype = "html" if _text(data.get("contentType"), "contentType").lower() == "html" else "text"
        return cls(content_type=ctype, content=_text(data.get("content"), "content"))


@dataclass
class MessageFlags:
    is_read: bool = False
    is_draft: bool = False
    importance: str = "normal"  # low | normal | high


@dataclass
class AttachmentRecord:
    id: str
    filename: str
    mime_type: str
    size_bytes: int
    is_inline: bool = False
    content_base64: str | None = None
    content_id: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "AttachmentRecord":
        data = _object(data, "attachment")
        return cls(
            id=_text(data.get("id"), "id"),
            filename=_text(data.get("name"), "name") or "adjunto",
            mime_type=_text(data.get("contentType"), "contentType") or "application/octet-stream",
            size_bytes=int(data.get("size") or 0),
            is_inline=bool(data.get("isInline", False)),
            content_base64=_text(data.get("contentBytes"), "contentBytes") or None,
            content_id=_text(data.get("contentId"), "contentId") or None,
        )

    def to_graph(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.filename,
            "contentType": self.mime_type,
            "size": self.size_bytes,
            "isInline": self.is_inline,
        }
        if self.content_base64 is not None:
            out["contentBytes"] = self.content_base64
        if self.content_id is not None:
            out["contentId"] = self.content_id
        return out


@dataclass
class MessageRecord:
    id: str
    subject: str
    received_at: datetime
    body: MessageBody
    sent_at: datetime | None = None
    sender: EmailAddress | None = None
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    reply_to: list[EmailAddress] = field(default_factory=list)
    has_attachments: bool = False
    attachments: list[AttachmentRecord] = field(default_factory=list)
    flags: MessageFlags = field(default_factory=MessageFlags)
    internet_message_id: str | None = None
    conversation_id: str | None = None
    body_preview: str = ""

    @classmethod
    def from_graph(cls, item: dict[str, Any]) -> "MessageRecord":
        """
        Construye el registro desde un item de la API de Graph o desde un
        fichero de staging (mismo formato + 'downloadedAt', que se ignora).
        """
        item = _object(item, "mensaje")
        mid = _text(item.get("id"), "id")
        if not mid:
            raise ValueError("Mensaje sin 'id'")
        sent_at = parse_graph_datetime(item.get("sentDateTime"))
        received_at = parse_graph_datetime(item.get("receivedDateTime")) or sent_at or EPOCH
        return cls(
            id=mid,
            subject=_text(item.get("subject"), "subject"),
            received_at=received_at,
            sent_at=sent_at,
            sender=EmailAddress.from_graph(item.get("from")),
            to=_addresses(item.get("toRecipients"), "toRecipients"),
            cc=_addresses(item.get("ccRecipients"), "ccRecipients"),
            bcc=_addresses(item.get("bccRecipients"), "bccRecipients"),
            reply_to=_addresses(item.get("replyTo"), "replyTo"),
            body=MessageBody.from_graph(item.get("body")),
            has_attachments=bool(item.get("hasAttachments", False)),
            attachments=[AttachmentRecord.from_graph(a) for a in _array(item.get("attachments"), "attachments")],
            flags=MessageFlags(
                is_read=bool(item.get("isRead", False)),
                is_draft=bool(item.get("isDraft", False)),
                importance=_text(item.get("importance"), "importance").lower() or "normal",
            ),
            internet_message_id=_text(item.get("internetMessageId"), "internetMessageId") or None,
            conversation_id=_text(item.get("conversationId"), "conversationId") or None,
            body_preview=_text(item.get("bodyPreview"), "bodyPreview"),
        )

    def to_graph(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "from": self.sender.to_graph() if self.sender else None,
            "toRecipients": [a.to_graph() for a in self.to],
            "ccRecipients": [a.to_graph() for a in self.cc],
            "bccRecipients": [a.to_graph() for a in self.bcc],
            "replyTo": [a.to_graph() for a in self.reply_to],
            "receivedDateTime": format_graph_datetime(self.received_at),
            "sentDateTime": format_graph_datetime(self.sent_at) if self.sent_at else None,
            "body": {"contentType": self.body.content_type, "content": self.body.content},
            "hasAttachments": self.has_attachments,
            "attachments": [a.to_graph() for a in self.attachments],
            "internetMessageId": self.internet_message_id,
            "conversationId": self.conversation_id,
            "importance": self.flags.importance,
            "isRead": self.flags.is_read,
            "isDraft": self.flags.is_draft,
            "bodyPreview": self.body_preview,
        }


# ───────── paginación ─────────
@dataclass(frozen=True)
class OffsetCursor:
    skip: int = 0
    kind: Literal["offset"] = "offset"


@dataclass(frozen=True)
class LinkCursor:
    """Continuación emitida por el servidor (@odata.nextLink)."""
    url: str
    kind: Literal["link"] = "link"


FetchCursor = Union[OffsetCursor, LinkCursor]


@dataclass
class MessagePage:
    records: list[MessageRecord]
    returned: int  # items crudos devueltos por el servidor (incluidos los descartados)
    next_link: str | None = None


@dataclass(frozen=True)
class DateRange:
    start: datetime | None = None
    end: datetime | None = None  # exclusivo

    def to_filter(self) -> str | None:
        parts: list[str] = []
        if self.start:
            parts.append(f"receivedDateTime ge {format_graph_datetime(self.start)}")
        if self.end:
            parts.append(f"receivedDateTime lt {format_graph_datetime(self.end)}")
        return " and ".join(parts) if parts else None


# ───────── eventos ─────────
@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    percentage: int
    message: str = ""
    phase: str = ""  # "download" | "export"

    @classmethod
    def of(cls, current: int, total: int, message: str = "", phase: str = "") -> "ProgressEvent":
        pct = 100 if total <= 0 else min(100, round(current * 100 / total))
        return cls(current=current, total=total, percentage=pct, message=message, phase=phase)


@dataclass(frozen=True)
class LogEvent:
    level: str
    logger: str
    message: str
