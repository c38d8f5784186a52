# application/use_cases/export_pipeline.py
from __future__ import annotations
import contextlib
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterator, Optional

from application.services.fetch_engine import MailboxClient, MessageFetcher
from application.services.mbox_encoder import MboxEncoder
from application.services.retry import RetryPolicy
from domain.errors import (
    EncodeRecordError,
    ExportMailError,
    FetchCancelled,
    InvalidOptions,
    StageWriteError,
)
from domain.models import DateRange, FetchCursor, ProgressEvent
from domain.ports import LogSink, ProgressSink
from infrastructure.filesystem.storage import StagingStore
from utils.log_capture import RunLogCapture

logger = logging.getLogger(__name__)


@dataclass
class DownloadOptions:
    folder: str = "inbox"
    limit: int = 1000
    output_dir: Path = Path("./emails")
    date_range: DateRange | None = None
    include_attachments: bool = True
    start: FetchCursor | None = None
    resume: bool = False  # ids ya en staging: ni adjuntos ni reescritura


@dataclass
class ExportOptions:
    input_dir: Path = Path("./emails")
    output_file: Path = Path("./emails.mbox")
    compress: bool = False


@dataclass
class DownloadReport:
    folder: str
    output_dir: Path
    total: int = 0
    fetched: int = 0
    staged: int = 0
    reused: int = 0
    stage_failures: list[str] = field(default_factory=list)
    cancelled: bool = False
    ids: list[str] = field(default_factory=list)  # recibidos en esta ejecución y presentes en staging


@dataclass
class ExportReport:
    staged_units: int = 0
    entries: int = 0
    skipped: list[str] = field(default_factory=list)
    output: Path | None = None


@dataclass
class FullReport:
    download: DownloadReport
    export: ExportReport
    cleaned_up: bool = False


class ExportPipeline:
    """
    Descarga → staging → mbox.

    Ante cualquier error fatal el directorio de staging se deja intacto para
    poder reanudar sin volver a descargar lo ya guardado.
    """

    def __init__(
        self,
        client: MailboxClient | None,
        *,
        batch_size: int = 50,
        attachment_workers: int = 8,
        retry: RetryPolicy | None = None,
        stop_event: Optional[threading.Event] = None,
        progress: ProgressSink | None = None,
        log_sink: LogSink | None = None,
        encoder: MboxEncoder | None = None,
        store_factory: Callable[[Path], StagingStore] = StagingStore,
    ) -> None:
        self.client = client
        self.batch_size = batch_size
        self.attachment_workers = attachment_workers
        self.retry = retry or RetryPolicy()
        self.stop_event = stop_event or threading.Event()
        self.progress = progress
        self.log_sink = log_sink
        self.encoder = encoder or MboxEncoder()
        self.store_factory = store_factory

    # ───────── helpers ─────────
    def _capture(self):
        if self.log_sink is None:
            return contextlib.nullcontext()
        return RunLogCapture(self.log_sink)

    def _emit(self, phase: str, current: int, total: int, message: str) -> None:
        event = ProgressEvent.of(current, total, message, phase=phase)
        logger.info("[%d/%d] %d%% %s", event.current, event.total, event.percentage, message)
        if self.progress:
            self.progress(event)

    def _every_batch(self, units: list[Path]) -> Iterator[Path]:
        total = len(units)
        for i, unit in enumerate(units, start=1):
            yield unit
            if i % self.batch_size == 0 or i == total:
                self._emit("export", i, total, f"Exportados {i}/{total} mensajes")

    @staticmethod
    def _validate_download(opts: DownloadOptions) -> None:
        if not (opts.folder or "").strip():
            raise InvalidOptions("La carpeta no puede estar vacía")
        if opts.limit <= 0:
            raise InvalidOptions(f"El límite debe ser > 0 (recibido {opts.limit})")
        dr = opts.date_range
        if dr and dr.start and dr.end and dr.start >= dr.end:
            raise InvalidOptions("La fecha inicial debe ser anterior a la final")

    def _open_store(self, path: Path) -> StagingStore:
        store = self.store_factory(Path(path))
        try:
            store.ensure()
        except OSError as e:
            raise InvalidOptions(f"No se pudo crear el directorio {path}", cause=e) from e
        return store

    # ───────── download ─────────
    def _download(self, opts: DownloadOptions) -> DownloadReport:
        self._validate_download(opts)
        if self.client is None:
            raise InvalidOptions("No hay cliente de correo configurado para descargar")
        store = self._open_store(opts.output_dir)
        fetcher = MessageFetcher(
            self.client,
            batch_size=self.batch_size,
            attachment_workers=self.attachment_workers,
            retry=self.retry,
            stop_event=self.stop_event,
        )
        plan = fetcher.plan(opts.folder, limit=opts.limit, date_range=opts.date_range)
        report = DownloadReport(folder=opts.folder, output_dir=store.base, total=plan.total)

        known = store.staged_ids() if opts.resume else set()
        if known:
            logger.info("Reanudando: %d mensajes ya en staging", len(known))

        try:
            for records in fetcher.iter_pages(
                plan,
                start=opts.start,
                include_attachments=opts.include_attachments,
                skip_enrichment=known.__contains__ if known else None,
            ):
                report.fetched += len(records)
                for record in records:
                    if record.id in known:
                        report.reused += 1
                        report.ids.append(record.id)
                        continue
                    try:
                        store.put(record)
                        report.staged += 1
                        report.ids.append(record.id)
                    except StageWriteError as e:
                        logger.warning("No se guardó %s: %s", record.id, e.describe())
                        report.stage_failures.append(record.id)
                total = max(plan.total, report.fetched)
                self._emit("download", report.fetched, total, f"Descargados {report.fetched}/{total} mensajes")
        except FetchCancelled as e:
            logger.warning("%s; lo descargado sigue en %s", e.message, store.base)
            report.cancelled = True

        if report.fetched and not (report.staged or report.reused):
            raise StageWriteError(f"No se pudo guardar ningún mensaje en {store.base}")
        logger.info("Descarga terminada: %d recibidos, %d guardados, %d reutilizados, %d fallidos",
                    report.fetched, report.staged, report.reused, len(report.stage_failures))
        return report

    def download(self, opts: DownloadOptions) -> DownloadReport:
        with self._capture():
            return self._download(opts)

    # ───────── export ─────────
    def _export(self, opts: ExportOptions, only_ids: set[str] | None = None) -> ExportReport:
        store = self.store_factory(Path(opts.input_dir))
        if not store.base.is_dir():
            raise InvalidOptions(f"No existe el directorio de entrada {opts.input_dir}")
        units = store.list_units()
        if only_ids is not None:
            # restos de ejecuciones anteriores (otra carpeta, filtro o límite) no entran
            selected = [u for u in units if store.id_from_name(u.name) in only_ids]
            if len(selected) < len(units):
                logger.info("Ignorados %d mensajes de staging que no son de esta descarga",
                            len(units) - len(selected))
            units = selected
        report = ExportReport(staged_units=len(units))
        if not units:
            logger.warning("No hay mensajes en %s: no se genera archivo", store.base)
            return report

        result = self.encoder.write_archive(
            self._every_batch(units), store.load, Path(opts.output_file), compress=opts.compress
        )
        report.entries = result.entries
        report.skipped = result.skipped
        report.output = result.output
        if result.entries == 0:
            raise EncodeRecordError(f"Ninguno de los {len(units)} mensajes se pudo codificar")
        return report

    def export(self, opts: ExportOptions) -> ExportReport:
        with self._capture():
            return self._export(opts)

    # ───────── full ─────────
    def run_full(self, download: DownloadOptions, export: ExportOptions, *, cleanup: bool = True) -> FullReport:
        export = replace(export, input_dir=download.output_dir)
        with self._capture():
            try:
                d = self._download(download)
                e = self._export(export, only_ids=set(d.ids))
            except ExportMailError:
                logger.error("Pipeline interrumpido; los mensajes descargados se conservan en %s",
                             download.output_dir)
                raise

            report = FullReport(download=d, export=e)
            if d.cancelled:
                logger.warning("Descarga incompleta: se conserva %s para reanudar", download.output_dir)
            elif cleanup and e.output is not None:
                self.store_factory(Path(download.output_dir)).cleanup()
                report.cleaned_up = True
            return report
