# interface_adapters/controllers/cli_controller.py
from __future__ import annotations
import argparse
import contextlib
import logging
import signal
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn, TimeElapsedColumn

from application.services.retry import RetryPolicy
from application.use_cases.export_pipeline import (
    DownloadOptions,
    ExportOptions,
    ExportPipeline,
)
from config.settings import Settings
from domain.errors import ExportMailError, FetchCancelled, InvalidOptions
from domain.models import DateRange, OffsetCursor, ProgressEvent
from infrastructure.auth.msal_credentials import MsalCredentialProvider
from infrastructure.email.graph_client import GraphMailClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


# ───────────────────────── argumentos ─────────────────────────
def _date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"fecha inválida '{value}' (formato YYYY-MM-DD)")


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' no es un número entero")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"debe ser > 0 (recibido {n})")
    return n


def _add_fetch_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-f", "--folder", default="inbox", help="Carpeta a descargar (por defecto: inbox)")
    p.add_argument("-l", "--limit", type=_positive_int, default=1000, help="Máximo de mensajes (por defecto: 1000)")
    p.add_argument("--from", dest="date_from", type=_date, metavar="YYYY-MM-DD", help="Recibidos desde esta fecha")
    p.add_argument("--to", dest="date_to", type=_date, metavar="YYYY-MM-DD", help="Recibidos hasta esta fecha (incluida)")
    p.add_argument("--no-attachments", action="store_true", help="No descargar adjuntos")
    p.add_argument("--batch-size", type=_positive_int, default=None, help="Mensajes por página")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="export-mail",
        description="Descarga correos de Outlook (Microsoft Graph) y los exporta a MBOX",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log en nivel DEBUG")
    parser.add_argument("--config", metavar="FILE", default=None, help="config.json alternativo")
    sub = parser.add_subparsers(dest="command")

    p_auth = sub.add_parser("auth", help="Autenticarse con Microsoft Graph (device code)")
    p_auth.add_argument("-r", "--reset", action="store_true", help="Borrar la sesión guardada antes")

    p_dl = sub.add_parser("download", help="Descargar correos a un directorio (un JSON por mensaje)")
    _add_fetch_args(p_dl)
    p_dl.add_argument("-o", "--output", default="./emails", help="Directorio de salida (por defecto: ./emails)")
    p_dl.add_argument("--skip", type=int, default=0, help="Empezar en este desplazamiento")
    p_dl.add_argument("--resume", action="store_true", help="No volver a guardar mensajes ya descargados")

    p_ex = sub.add_parser("export", help="Exportar los correos descargados a MBOX")
    p_ex.add_argument("-i", "--input", default="./emails", help="Directorio con los correos descargados")
    p_ex.add_argument("-o", "--output", default="./emails.mbox", help="Fichero MBOX de salida")
    p_ex.add_argument("--compress", action="store_true", help="Comprimir con gzip")

    p_full = sub.add_parser("full", help="Descargar y exportar en un solo paso")
    _add_fetch_args(p_full)
    p_full.add_argument("-o", "--output", default="./emails.mbox", help="Fichero MBOX de salida")
    p_full.add_argument("--compress", action="store_true", help="Comprimir con gzip")
    p_full.add_argument("--keep-temp", action="store_true", help="Conservar el directorio temporal")

    sub.add_parser("status", help="Estado de autenticación y configuración")
    return parser


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(args)


def _date_range(args: argparse.Namespace) -> DateRange | None:
    start = args.date_from
    # --to es inclusivo: se filtra hasta la medianoche siguiente (exclusiva)
    end = args.date_to + timedelta(days=1) if args.date_to else None
    if start is None and end is None:
        return None
    return DateRange(start=start, end=end)


@contextlib.contextmanager
def _stop_on_sigint(stop_event: threading.Event):
    """Primer Ctrl+C: parada ordenada. El segundo ya interrumpe."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        logger.warning("Interrupción recibida: se detiene tras la petición en curso")
        stop_event.set()
        signal.signal(signal.SIGINT, previous)

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class ProgressDisplay:
    """Barras de progreso en consola (rich): una tarea por fase."""

    LABELS = {"download": "Descargando", "export": "Exportando"}

    def __init__(self, console: Console) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
            disable=not console.is_terminal,
        )
        self._tasks: dict[str, TaskID] = {}

    def __enter__(self) -> "ProgressDisplay":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        label = self.LABELS.get(event.phase, "Procesando")
        task = self._tasks.get(event.phase)
        if task is None:
            task = self.progress.add_task(f"[cyan]{label}...", total=event.total)
            self._tasks[event.phase] = task
        description = f"[green]✓ {event.message}" if event.current >= event.total else f"[cyan]{label}..."
        self.progress.update(task, completed=event.current, total=event.total, description=description)


# ───────────────────────── controlador ─────────────────────────
class CliController:
    def __init__(
        self,
        settings: Settings,
        *,
        credentials: Optional[MsalCredentialProvider] = None,
        client: Optional[GraphMailClient] = None,
        stop_event: Optional[threading.Event] = None,
        out: Callable[[str], None] = print,
        console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self._credentials = credentials
        self._client = client
        self.stop_event = stop_event or threading.Event()
        self.out = out
        self.display = ProgressDisplay(console or Console(stderr=True))

    # MSAL solo se construye si el comando lo necesita (export funciona sin red)
    @property
    def credentials(self) -> MsalCredentialProvider:
        if self._credentials is None:
            problems = self.settings.validate()
            if problems:
                raise InvalidOptions("Configuración inválida: " + "; ".join(problems))
            self._credentials = MsalCredentialProvider.from_settings(self.settings)
        return self._credentials

    @property
    def client(self) -> GraphMailClient:
        if self._client is None:
            self._client = GraphMailClient(
                credentials=self.credentials,
                base=self.settings.GRAPH_BASE,
                timeout=self.settings.REQUEST_TIMEOUT,
            )
        return self._client

    def _pipeline(self, batch_size: int | None = None) -> ExportPipeline:
        st = self.settings
        return ExportPipeline(
            self.client,
            batch_size=batch_size or st.BATCH_SIZE,
            attachment_workers=st.attachment_workers(),
            retry=RetryPolicy(attempts=st.FETCH_RETRIES, backoff=st.RETRY_BACKOFF),
            stop_event=self.stop_event,
            progress=self.display,
        )

    def _export_pipeline(self) -> ExportPipeline:
        # export no toca la red: el cliente no se usa
        return ExportPipeline(None, batch_size=self.settings.BATCH_SIZE, progress=self.display)

    # ───────── comandos ─────────
    def cmd_auth(self, args: argparse.Namespace) -> int:
        creds = self.credentials
        if args.reset:
            creds.clear()
        elif creds.is_authenticated():
            self.out("Ya autenticado (se usa la sesión guardada)")
            return EXIT_OK
        user = creds.authenticate(prompt=self.out)
        self.out(f"Autenticado correctamente como {user}")
        return EXIT_OK

    def _download_options(self, args: argparse.Namespace, output_dir: Path, *, resume: bool) -> DownloadOptions:
        return DownloadOptions(
            folder=args.folder,
            limit=args.limit,
            output_dir=output_dir,
            date_range=_date_range(args),
            include_attachments=not args.no_attachments,
            start=OffsetCursor(getattr(args, "skip", 0) or 0),
            resume=resume,
        )

    def cmd_download(self, args: argparse.Namespace) -> int:
        if args.skip < 0:
            raise InvalidOptions("--skip no puede ser negativo")
        opts = self._download_options(args, Path(args.output), resume=args.resume)
        report = self._pipeline(args.batch_size).download(opts)
        self.out(f"Descargados {report.staged + report.reused}/{report.fetched} mensajes en {report.output_dir}")
        if report.stage_failures:
            self.out(f"Aviso: {len(report.stage_failures)} mensajes no se pudieron guardar")
        return EXIT_CANCELLED if report.cancelled else EXIT_OK

    def cmd_export(self, args: argparse.Namespace) -> int:
        opts = ExportOptions(input_dir=Path(args.input), output_file=Path(args.output), compress=args.compress)
        report = self._export_pipeline().export(opts)
        if report.output is None:
            self.out(f"No hay mensajes que exportar en {opts.input_dir}")
            return EXIT_OK
        self.out(f"Exportados {report.entries}/{report.staged_units} mensajes a {report.output}")
        if report.skipped:
            self.out(f"Aviso: {len(report.skipped)} mensajes omitidos por contenido no codificable")
        return EXIT_OK

    def cmd_full(self, args: argparse.Namespace) -> int:
        staging = self.settings.staging_path()
        dl = self._download_options(args, staging, resume=True)
        ex = ExportOptions(input_dir=staging, output_file=Path(args.output), compress=args.compress)
        report = self._pipeline(args.batch_size).run_full(dl, ex, cleanup=not args.keep_temp)
        if report.export.output is not None:
            self.out(f"Exportados {report.export.entries} mensajes a {report.export.output}")
        else:
            self.out("No se encontraron mensajes con esos criterios")
        if report.download.cancelled:
            self.out(f"Descarga interrumpida: los mensajes descargados siguen en {staging}")
            return EXIT_CANCELLED
        return EXIT_OK

    def cmd_status(self, args: argparse.Namespace) -> int:
        st = self.settings
        self.out("Estado")
        self.out(f"  Configuración: {'config.json' if st.config_file().exists() else 'valores por defecto'}"
                 f" ({st.config_file()})")
        problems = st.validate()
        if problems:
            self.out("  Problemas: " + "; ".join(problems))
            return EXIT_USAGE
        creds = self.credentials
        authenticated = creds.is_authenticated()
        self.out(f"  Autenticación: {'OK' if authenticated else 'no autenticado'}")
        if authenticated:
            try:
                me = self.client.get_me()
            except ExportMailError as e:
                logger.warning("No se pudo consultar el perfil: %s", e.describe())
                me = {}
            info = creds.account_info() or {}
            self.out(f"  Usuario: {me.get('displayName') or 'desconocido'}")
            self.out(f"  Email: {me.get('mail') or me.get('userPrincipalName') or info.get('username') or 'desconocido'}")
        return EXIT_OK

    # ───────── ejecución ─────────
    def run(self, args: argparse.Namespace) -> int:
        handlers = {
            "auth": self.cmd_auth,
            "download": self.cmd_download,
            "export": self.cmd_export,
            "full": self.cmd_full,
            "status": self.cmd_status,
        }
        handler = handlers.get(args.command)
        if handler is None:
            build_parser().print_help()
            return EXIT_USAGE
        try:
            with _stop_on_sigint(self.stop_event), self.display:
                return handler(args)
        except InvalidOptions as e:
            logger.error(e.describe())
            return EXIT_USAGE
        except FetchCancelled as e:
            logger.error(e.describe())
            return EXIT_CANCELLED
        except ExportMailError as e:
            logger.error(e.describe())
            logger.debug("Detalle", exc_info=True)
            return EXIT_FATAL
