"""Utilities for mirroring skipped-outcome diagnostics to dedicated log files."""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import pandas as pd

LOG_DIRECTORY = Path("logs")
_SANITIZE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_CLEARED_LOG_PATHS: set[Path] = set()
_CLEARED_LOCK = threading.Lock()

log = logging.getLogger(__name__)


def sanitize_component(value: str) -> str:
    sanitized = _SANITIZE_RE.sub("_", str(value))
    sanitized = sanitized.strip("._-") or "cohort"
    if len(sanitized) > 128:
        sanitized = sanitized[:128]
    return sanitized


def resolve_log_path(name: str, *, directory: str | Path | None = None) -> Path:
    base = Path(directory) if directory is not None else LOG_DIRECTORY
    return base / f"{sanitize_component(name)}.log"


def _ensure_prepared(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with _CLEARED_LOCK:
        if path in _CLEARED_LOG_PATHS:
            return
        path.write_text("", encoding="utf-8")
        _CLEARED_LOG_PATHS.add(path)


def append_line(name: str, text: str, *, directory: str | Path | None = None) -> Path:
    path = resolve_log_path(name, directory=directory)
    _ensure_prepared(path)
    line = text if text.endswith("\n") else f"{text}\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)
    return path


@dataclass
class SkipLog:
    """Outcomes left out of a stage, with the reason they were skipped."""

    stage: str
    directory: Optional[Path] = None
    suffix: str = ""
    rows: List[dict] = field(default_factory=list)

    def record(self, cohort: str, outcome: str, reason: str, error: Optional[BaseException] = None) -> None:
        detail = f"{type(error).__name__}: {error}" if error is not None else ""
        self.rows.append(
            {"Stage": self.stage, "Cohort": cohort, "Outcome": outcome, "Reason": reason, "Detail": detail}
        )
        message = f"[skip] stage={self.stage} cohort={cohort} outcome={outcome} reason={reason}"
        if detail:
            message = f"{message} detail={detail}"
        log.warning(message)
        if self.directory is not None:
            append_line(f"skipped_{self.stage}{self.suffix}", message, directory=self.directory)

    def outcomes(self, cohort: Optional[str] = None) -> List[str]:
        return [r["Outcome"] for r in self.rows if cohort is None or r["Cohort"] == cohort]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=["Stage", "Cohort", "Outcome", "Reason", "Detail"])

    def __len__(self) -> int:
        return len(self.rows)
