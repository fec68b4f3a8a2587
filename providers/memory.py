"""
In-process collaborators: bar store, plot sink, attachment store, console feed.
Used by the HTTP gateway and the test suite.
"""
import hashlib
import io
import time
from collections import defaultdict, deque
from typing import Any, Iterable

import pandas as pd

from libs import config
from libs.domain_models import ArtifactKind, Bar, CsvManifest, CsvTable, to_epoch_seconds
from sandbox.errors import AttachmentMissing


class InMemoryBarProvider:
    """Bars keyed by (symbol, timeframe). Timestamps are normalised to epoch seconds on load."""

    def __init__(self, data: dict[tuple[str, str], Iterable[Bar | dict]] | None = None):
        self._bars: dict[tuple[str, str], list[Bar]] = {}
        for (symbol, timeframe), bars in (data or {}).items():
            self.load(symbol, timeframe, bars)

    def load(self, symbol: str, timeframe: str, bars: Iterable[Bar | dict]) -> int:
        parsed = []
        for b in bars:
            raw = b.model_dump() if isinstance(b, Bar) else dict(b)
            raw["time"] = to_epoch_seconds(raw["time"])
            parsed.append(Bar.model_validate(raw))
        parsed.sort(key=lambda b: b.time)
        self._bars[(symbol.upper(), timeframe)] = parsed
        return len(parsed)

    def get_bars(self, symbol: str, timeframe: str) -> list[Bar]:
        return list(self._bars.get((symbol.upper(), timeframe), []))


class InMemoryPlotSink:
    """
    Artifact store: kind → id → {data, opts}. A later write with the same id
    replaces the earlier one. `writes` records every applied write in order.
    """

    def __init__(self):
        self.artifacts: dict[ArtifactKind, dict[str, dict[str, Any]]] = {k: {} for k in ArtifactKind}
        self.writes: list[tuple[ArtifactKind, str]] = []

    def _put(self, kind: ArtifactKind, id: str, data: list[dict], opts: dict | None) -> None:
        self.artifacts[kind][id] = {"data": list(data), "opts": dict(opts or {})}
        self.writes.append((kind, id))

    def line(self, id, data, opts=None):
        self._put(ArtifactKind.LINE, id, data, opts)

    def bands(self, id, data, opts=None):
        self._put(ArtifactKind.BANDS, id, data, opts)

    def histogram(self, id, data, opts=None):
        self._put(ArtifactKind.HISTOGRAM, id, data, opts)

    def boxes(self, id, data, opts=None):
        self._put(ArtifactKind.BOXES, id, data, opts)

    def labels(self, id, data, opts=None):
        self._put(ArtifactKind.LABELS, id, data, opts)

    def clear_prefix(self, kind: ArtifactKind, prefix: str) -> int:
        store = self.artifacts[kind]
        doomed = [k for k in store if k.startswith(prefix)]
        for k in doomed:
            del store[k]
        return len(doomed)

    def ids(self, prefix: str = "") -> set[str]:
        return {i for store in self.artifacts.values() for i in store if i.startswith(prefix)}

    def snapshot(self, prefix: str = "") -> dict[str, dict[str, Any]]:
        return {
            kind.value: {i: a for i, a in store.items() if i.startswith(prefix)}
            for kind, store in self.artifacts.items()
        }


def _checksum(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()[:8]


class InMemoryAttachmentStore:
    """CSV attachments parsed once on add; every cell is kept as a string."""

    def __init__(self):
        self._tables: dict[str, CsvTable] = {}
        self._manifests: dict[str, CsvManifest] = {}

    def add_csv(self, name: str, text: str) -> CsvManifest:
        raw = text.encode("utf-8")
        if text.strip():
            df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
            table = CsvTable(columns=[str(c) for c in df.columns], rows=df.to_dict("records"))
        else:
            table = CsvTable()
        manifest = CsvManifest(
            name=name,
            size=len(raw),
            checksum=_checksum(raw),
            columns=table.columns,
            row_count=len(table.rows),
        )
        self._tables[name] = table
        self._manifests[name] = manifest
        return manifest

    def list(self) -> list[str]:
        return sorted(self._tables)

    def manifest(self, name: str) -> CsvManifest:
        if name not in self._manifests:
            raise AttachmentMissing(f"CSV not found: {name}")
        return self._manifests[name]

    def csv(self, name: str) -> CsvTable:
        if name not in self._tables:
            raise AttachmentMissing(f"CSV not found: {name}")
        return self._tables[name]


class ConsoleLog:
    """Console-style feed per instance, capped at CONSOLE_MAX_LINES."""

    def __init__(self, max_lines: int = config.CONSOLE_MAX_LINES):
        self._lines: dict[str, deque] = defaultdict(lambda: deque(maxlen=max_lines))

    def append(self, instance_id: str, level: str, text: str) -> None:
        self._lines[instance_id].append({"level": level, "text": text, "at": time.time()})

    def lines(self, instance_id: str) -> list[dict]:
        return list(self._lines.get(instance_id, ()))

    def clear(self, instance_id: str) -> None:
        self._lines.pop(instance_id, None)
