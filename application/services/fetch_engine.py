# application/services/fetch_engine.py
from __future__ import annotations
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Protocol

from application.services.retry import NO_RETRY, RetryPolicy
from domain.errors import FetchCancelled, GraphRequestError, TransientFetchError
from domain.models import (
    AttachmentRecord,
    DateRange,
    FetchCursor,
    LinkCursor,
    MessagePage,
    MessageRecord,
    OffsetCursor,
)

logger = logging.getLogger(__name__)


class MailboxClient(Protocol):
    def resolve_folder_id(self, folder: str) -> str: ...

    def count_messages(self, folder_id: str, odata_filter: str | None = None) -> int: ...

    def list_messages(
        self, folder_id: str, *, top: int, cursor: FetchCursor, odata_filter: str | None = None
    ) -> MessagePage: ...

    def get_message_attachments(self, message_id: str) -> List[AttachmentRecord]: ...


@dataclass
class FetchPlan:
    folder: str
    folder_id: str
    total: int  # orientativo (puede estar desfasado); ya acotado por limit
    limit: int
    odata_filter: str | None = None


class MessageFetcher:
    """
    Descarga paginada de una carpeta, ordenada por receivedDateTime desc.

    El fin de la paginación lo marca la primera página corta (menos registros
    de los pedidos), nunca el total declarado por el servidor.
    """

    def __init__(
        self,
        client: MailboxClient,
        *,
        batch_size: int = 50,
        attachment_workers: int = 8,
        retry: RetryPolicy = NO_RETRY,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size debe ser > 0")
        self.client = client
        self.batch_size = batch_size
        self.attachment_workers = max(1, min(attachment_workers, batch_size))
        self.retry = retry
        self.stop_event = stop_event or threading.Event()

    def _check_stop(self, where: str) -> None:
        if self.stop_event.is_set():
            raise FetchCancelled(f"Descarga cancelada {where}")

    # ───────── plan ─────────
    def plan(self, folder: str, *, limit: int, date_range: DateRange | None = None) -> FetchPlan:
        folder_id = self.retry.call(
            lambda: self.client.resolve_folder_id(folder), what=f"carpeta '{folder}'"
        )
        odata_filter = date_range.to_filter() if date_range else None
        count = self.retry.call(
            lambda: self.client.count_messages(folder_id, odata_filter), what=f"recuento de '{folder}'"
        )
        total = min(count, limit)
        logger.info("Carpeta '%s' → %d mensajes a descargar (total servidor=%d, límite=%d)",
                    folder, total, count, limit)
        return FetchPlan(folder=folder, folder_id=folder_id, total=total, limit=limit, odata_filter=odata_filter)

    # ───────── páginas ─────────
    def iter_pages(
        self,
        plan: FetchPlan,
        *,
        start: FetchCursor | None = None,
        include_attachments: bool = True,
        skip_enrichment: Callable[[str], bool] | None = None,
    ) -> Iterator[List[MessageRecord]]:
        cursor: FetchCursor = start or OffsetCursor(0)
        base_skip = cursor.skip if isinstance(cursor, OffsetCursor) else 0
        consumed = 0

        while consumed < plan.limit:
            self._check_stop("antes de pedir una página nueva")
            top = min(self.batch_size, plan.limit - consumed)
            page_cursor = cursor
            page = self.retry.call(
                lambda: self.client.list_messages(
                    plan.folder_id, top=top, cursor=page_cursor, odata_filter=plan.odata_filter
                ),
                what=f"página {self._describe(page_cursor)}",
            )
            # un nextLink conserva el $top original: se recorta a lo que queda
            records = self._dedupe(page.records[:top])
            if include_attachments:
                self._enrich(records, skip_enrichment)

            consumed += min(page.returned, top)
            if records:
                yield records

            if page.returned < top:
                logger.debug("Página corta (%d < %d): fin de la paginación", page.returned, top)
                return
            cursor = LinkCursor(page.next_link) if page.next_link else OffsetCursor(base_skip + consumed)

    def fetch(
        self,
        folder: str,
        *,
        limit: int,
        date_range: DateRange | None = None,
        start: FetchCursor | None = None,
        include_attachments: bool = True,
    ) -> Iterator[MessageRecord]:
        plan = self.plan(folder, limit=limit, date_range=date_range)
        for records in self.iter_pages(plan, start=start, include_attachments=include_attachments):
            yield from records

    @staticmethod
    def _describe(cursor: FetchCursor) -> str:
        if isinstance(cursor, LinkCursor):
            return "nextLink"
        return f"skip={cursor.skip}"

    @staticmethod
    def _dedupe(records: List[MessageRecord]) -> List[MessageRecord]:
        by_id: dict[str, MessageRecord] = {}
        for r in records:
            if r.id in by_id:
                logger.debug("Id duplicado en la página, gana el último: %s", r.id)
            by_id[r.id] = r
        return list(by_id.values())

    # ───────── adjuntos ─────────
    def _fetch_attachments(self, record: MessageRecord) -> Optional[List[AttachmentRecord]]:
        if self.stop_event.is_set():
            return None  # no llegó a empezar
        try:
            return self.retry.call(
                lambda: self.client.get_message_attachments(record.id),
                what=f"adjuntos de {record.id}",
            )
        except (TransientFetchError, GraphRequestError) as e:
            logger.warning("No se pudieron descargar los adjuntos de %s (%s); se guarda sin adjuntos",
                           record.id, e)
            return []

    def _enrich(self, records: List[MessageRecord], skip: Callable[[str], bool] | None) -> None:
        targets = [r for r in records if r.has_attachments and not (skip and skip(r.id))]
        if not targets:
            return
        with ThreadPoolExecutor(max_workers=min(self.attachment_workers, len(targets))) as pool:
            futures = [(r, pool.submit(self._fetch_attachments, r)) for r in targets]
            wait([f for _, f in futures])

        # todas las peticiones terminaron: ahora se reportan los errores fatales
        cancelled = False
        for record, fut in futures:
            result = fut.result()
            if result is None:
                cancelled = True
                continue
            record.attachments = result
        if cancelled:
            raise FetchCancelled("Descarga cancelada durante la descarga de adjuntos")
