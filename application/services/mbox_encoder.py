# application/services/mbox_encoder.py
from __future__ import annotations
import base64
import binascii
import gzip
import hashlib
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from email.header import Header
from email.utils import encode_rfc2231, format_datetime, formataddr
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, List

from domain.errors import ArchiveWriteError, EncodeRecordError
from domain.models import AttachmentRecord, EmailAddress, MessageRecord

logger = logging.getLogger(__name__)

PLACEHOLDER_SENDER = "MAILER-DAEMON"
BASE64_LINE = 76
MESSAGE_ID_DOMAIN = "export-mail.local"

_FROM_LINE = re.compile(r"^(>*From )", re.MULTILINE)
_ID_UNSAFE = re.compile(r"[^A-Za-z0-9.\-_=+]")
_WS = re.compile(r"\s+")


def quote_from_lines(text: str) -> str:
    """'From ' al inicio de línea → '>From '; '>From ' → '>>From ' (mboxrd)."""
    return _FROM_LINE.sub(r">\1", text)


def _clean(value: str) -> str:
    # un CR/LF dentro de una cabecera partiría la entrada
    return re.sub(r"[\r\n]+", " ", value or "").strip()


def _encode_text(value: str) -> str:
    value = _clean(value)
    if value.isascii():
        return value
    return Header(value, "utf-8").encode()


def _format_address(addr: EmailAddress) -> str:
    name, address = _clean(addr.name), _clean(addr.address)
    if not address:
        return _encode_text(name)
    return formataddr((name, address), charset="utf-8")


def _address_list(addrs: List[EmailAddress]) -> str:
    parts = [p for p in (_format_address(a) for a in addrs) if p]
    joined = ", ".join(parts)
    return joined if len(joined) <= 76 else ",\n ".join(parts)


def _param(key: str, value: str) -> str:
    value = _clean(value) or "adjunto"
    if value.isascii():
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{key}="{escaped}"'
    return f"{key}*={encode_rfc2231(value, 'utf-8')}"


def _normalize_body(text: str) -> str:
    text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    return text if text.endswith("\n") else text + "\n"


def _separator_sender(record: MessageRecord) -> str:
    address = _clean(record.sender.address) if record.sender else ""
    if not address or _WS.search(address):
        return PLACEHOLDER_SENDER
    return address


@dataclass
class EncodeResult:
    entries: int = 0
    skipped: List[str] = field(default_factory=list)
    output: Path | None = None


class MboxEncoder:
    """
    Serializa MessageRecord a entradas mbox (separador 'From ', cabeceras
    RFC 2822, cuerpo MIME). Un registro que no se puede codificar se omite
    con un aviso: mejor perder un mensaje que dejar una entrada rota.
    """

    # ───────── una entrada ─────────
    def separator_line(self, record: MessageRecord) -> str:
        stamp = time.asctime(record.received_at.utctimetuple())
        return f"From {_separator_sender(record)} {stamp}\n"

    def headers(self, record: MessageRecord) -> List[str]:
        out: List[str] = []
        out.append(f"From: {_format_address(record.sender) if record.sender else PLACEHOLDER_SENDER}")
        if record.to:
            out.append(f"To: {_address_list(record.to)}")
        if record.cc:
            out.append(f"Cc: {_address_list(record.cc)}")
        if record.reply_to:
            out.append(f"Reply-To: {_address_list(record.reply_to)}")
        out.append(f"Date: {format_datetime(record.received_at)}")
        out.append(f"Subject: {_encode_text(record.subject)}")
        out.append(f"Message-ID: {self.message_id(record)}")
        out.append("MIME-Version: 1.0")
        out.append(f"X-Export-Mail-Id: {_ID_UNSAFE.sub('', record.id)}")
        if record.flags.is_read:
            out.append("Status: RO")
        if record.flags.importance in ("low", "high"):
            out.append(f"Importance: {record.flags.importance}")
        return out

    @staticmethod
    def message_id(record: MessageRecord) -> str:
        mid = _clean(record.internet_message_id or "")
        if mid:
            return mid if mid.startswith("<") else f"<{mid.strip('<>')}>"
        return f"<{_ID_UNSAFE.sub('', record.id)}@{MESSAGE_ID_DOMAIN}>"

    @staticmethod
    def _body_part_headers(record: MessageRecord) -> List[str]:
        subtype = "html" if record.body.content_type == "html" else "plain"
        return [f'Content-Type: text/{subtype}; charset="utf-8"', "Content-Transfer-Encoding: 8bit"]

    @staticmethod
    def _attachment_part(att: AttachmentRecord) -> str:
        raw = _WS.sub("", att.content_base64 or "")
        try:
            base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncodeRecordError(f"Adjunto '{att.filename}' con base64 inválido", cause=e) from e
        mime = _clean(att.mime_type)
        if "/" not in mime:
            mime = "application/octet-stream"
        lines = [
            f"Content-Type: {mime}; {_param('name', att.filename)}",
            f"Content-Disposition: attachment; {_param('filename', att.filename)}",
            "Content-Transfer-Encoding: base64",
        ]
        if att.content_id:
            lines.append(f"Content-ID: <{_clean(att.content_id).strip('<>')}>")
        lines.append("")
        lines.extend(raw[i:i + BASE64_LINE] for i in range(0, len(raw), BASE64_LINE))
        return "\n".join(lines) + "\n"

    @staticmethod
    def boundary(record: MessageRecord, body: str) -> str:
        # determinista: la misma entrada produce siempre el mismo archivo
        seed, n = record.id, 0
        while True:
            b = f"=_export-mail_{hashlib.sha1(seed.encode('utf-8')).hexdigest()[:24]}"
            if b not in body:
                return b
            n += 1
            seed = f"{record.id}#{n}"

    def encode_text(self, record: MessageRecord) -> str:
        body = _normalize_body(record.body.content)
        parts = [a for a in record.attachments if a.content_base64]
        skipped = len(record.attachments) - len(parts)
        if skipped:
            logger.debug("%s: %d adjunto(s) sin contenido no se incluyen", record.id, skipped)

        lines = self.headers(record)
        if not parts:
            lines.extend(self._body_part_headers(record))
            content = "\n".join(lines) + "\n\n" + body
        else:
            b = self.boundary(record, body)
            lines.append(f'Content-Type: multipart/mixed; boundary="{b}"')
            chunks = ["\n".join(lines) + "\n\n", "This is a multi-part message in MIME format.\n\n"]
            chunks.append(f"--{b}\n" + "\n".join(self._body_part_headers(record)) + "\n\n" + body)
            for att in parts:
                chunks.append(f"--{b}\n" + self._attachment_part(att))
            chunks.append(f"--{b}--\n")
            content = "".join(chunks)
        return self.separator_line(record) + quote_from_lines(content) + "\n"

    def encode_record(self, record: MessageRecord) -> bytes:
        try:
            return self.encode_text(record).encode("utf-8")
        except UnicodeEncodeError as e:
            raise EncodeRecordError(f"Mensaje {record.id} con texto no codificable", cause=e) from e

    # ───────── archivo completo ─────────
    def iter_entries(
        self,
        units: Iterable[Path],
        load: Callable[[Path], MessageRecord],
        result: EncodeResult,
    ) -> Iterator[bytes]:
        for unit in units:
            try:
                record = load(unit)
                entry = self.encode_record(record)
            except EncodeRecordError as e:
                logger.warning("Omitido %s: %s", Path(unit).name, e.describe())
                result.skipped.append(Path(unit).name)
                continue
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning("Omitido %s: no se pudo leer (%s)", Path(unit).name, e)
                result.skipped.append(Path(unit).name)
                continue
            result.entries += 1
            yield entry

    def encode(self, units: Iterable[Path], load: Callable[[Path], MessageRecord]) -> tuple[bytes, EncodeResult]:
        result = EncodeResult()
        data = b"".join(self.iter_entries(units, load, result))
        return data, result

    @staticmethod
    def archive_path(output: Path, compress: bool) -> Path:
        output = Path(output)
        if compress and output.suffix != ".gz":
            return output.with_name(output.name + ".gz")
        return output

    def write_archive(
        self,
        units: Iterable[Path],
        load: Callable[[Path], MessageRecord],
        output: Path,
        *,
        compress: bool = False,
    ) -> EncodeResult:
        """
        Escribe a un temporal junto al destino y hace os.replace al final:
        nunca queda un archivo a medias. Con compress=True el archivo es un
        único miembro gzip (mtime=0 para que sea reproducible).
        Si no se codifica ninguna entrada no se crea el archivo.
        """
        target = self.archive_path(output, compress)
        result = EncodeResult()
        tmp_path: str | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
            with os.fdopen(fd, "wb") as raw:
                sink: BinaryIO = raw
                gz = gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) if compress else None
                if gz is not None:
                    sink = gz  # type: ignore[assignment]
                try:
                    for entry in self.iter_entries(units, load, result):
                        sink.write(entry)
                finally:
                    if gz is not None:
                        gz.close()
                raw.flush()
                os.fsync(raw.fileno())
            if result.entries:
                os.replace(tmp_path, target)
                tmp_path = None
                result.output = target
                logger.info("Archivo mbox escrito: %s (%d mensajes, %d omitidos)",
                            target, result.entries, len(result.skipped))
        except OSError as e:
            raise ArchiveWriteError(f"No se pudo escribir {target}", cause=e) from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        return result


def count_entries(data: bytes) -> int:
    """Número de separadores 'From ' en un mbox ya descomprimido."""
    return sum(1 for line in data.split(b"\n") if line.startswith(b"From "))
