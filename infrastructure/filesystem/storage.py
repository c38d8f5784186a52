# infrastructure/filesystem/storage.py
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, unquote
import json
import logging
import os
import re
import shutil
import tempfile

from domain.errors import StageWriteError
from domain.models import MessageRecord, format_graph_datetime

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9\-_\s]")
_SPACES = re.compile(r"\s+")


def subject_slug(subject: str, max_len: int = 50) -> str:
    s = _UNSAFE.sub("", subject or "")
    s = _SPACES.sub("_", s.strip())
    return s[:max_len]


def _encode_id(message_id: str) -> str:
    # '_' también se escapa: así el último '_' del nombre separa siempre el id
    return quote(message_id, safe="-.=").replace("_", "%5F")


class StagingStore:
    """
    Un fichero JSON por mensaje: {receivedAt}_{slug}_{id}.json.
    El orden alfabético de los nombres es el orden de exportación.
    """
    SUFFIX = ".json"
    TMP_PREFIX = ".tmp-"

    def __init__(self, base: Path) -> None:
        self.base = Path(base)
        self._by_id: dict[str, Path] | None = None  # id → fichero; se construye al primer uso

    def ensure(self) -> Path:
        self.base.mkdir(parents=True, exist_ok=True)
        return self.base

    # ───────── nombres ─────────
    @classmethod
    def unit_name(cls, record: MessageRecord) -> str:
        stamp = record.received_at.astimezone(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
        return f"{stamp}_{subject_slug(record.subject)}_{_encode_id(record.id)}{cls.SUFFIX}"

    @classmethod
    def id_from_name(cls, name: str) -> str:
        stem = name[: -len(cls.SUFFIX)] if name.endswith(cls.SUFFIX) else name
        return unquote(stem.rsplit("_", 1)[-1])

    # ───────── escritura ─────────
    def put(self, record: MessageRecord, downloaded_at: datetime | None = None) -> Path:
        """
        Escritura atómica (temporal + rename). Si el id ya estaba en staging
        con otro nombre, ese fichero se elimina: gana el último visto.
        """
        index = self._index()
        target = self.base / self.unit_name(record)
        payload = record.to_graph()
        payload["downloadedAt"] = format_graph_datetime(downloaded_at or datetime.now(timezone.utc))
        tmp_path: str | None = None
        try:
            self.ensure()
            fd, tmp_path = tempfile.mkstemp(dir=self.base, prefix=self.TMP_PREFIX, suffix=".part")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StageWriteError(f"No se pudo guardar el mensaje {record.id}", cause=e) from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        previous = index.get(record.id)
        if previous is not None and previous != target:
            logger.debug("Sustituido staging previo de %s: %s", record.id, previous.name)
            previous.unlink(missing_ok=True)
        index[record.id] = target
        return target

    # ───────── lectura ─────────
    def list_units(self) -> list[Path]:
        if not self.base.is_dir():
            return []
        return sorted(
            (p for p in self.base.iterdir()
             if p.is_file() and p.name.endswith(self.SUFFIX) and not p.name.startswith(".")),
            key=lambda p: p.name,
        )

    def _index(self) -> dict[str, Path]:
        # un solo listado por store; put() lo mantiene al día
        if self._by_id is None:
            self._by_id = {self.id_from_name(p.name): p for p in self.list_units()}
        return self._by_id

    def staged_ids(self) -> set[str]:
        return set(self._index())

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def load(self, path: Path) -> MessageRecord:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{Path(path).name}: se esperaba un objeto JSON")
        return MessageRecord.from_graph(data)

    def cleanup(self) -> None:
        self._by_id = None
        if self.base.exists():
            shutil.rmtree(self.base)
            logger.info("Directorio temporal eliminado: %s", self.base)
