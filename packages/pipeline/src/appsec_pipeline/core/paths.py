from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import REPORT_DIRS


@dataclass(frozen=True, slots=True)
class RunLayout:
    """
    Canonical path layout for one build:

      {run_root}/{build_id}/events.jsonl
      {run_root}/{build_id}/run_report.json
      {run_root}/{build_id}/artifacts.json
      {run_root}/{build_id}/logs/{stage}.log
      {report_root}/{build_id}/{tool}/...
      {report_root}/{build_id}/sha256sums.txt

    Namespacing by build id keeps runs from overwriting each other.
    """

    run_root: Path
    report_root: Path
    build_id: str

    def run_dir(self) -> Path:
        return self.run_root / self.build_id

    def events_jsonl(self) -> Path:
        return self.run_dir() / "events.jsonl"

    def run_report_json(self) -> Path:
        return self.run_dir() / "run_report.json"

    def artifacts_json(self) -> Path:
        return self.run_dir() / "artifacts.json"

    def logs_dir(self) -> Path:
        return self.run_dir() / "logs"

    def stage_log(self, stage: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in stage)
        return self.logs_dir() / f"{safe}.log"

    def scratch_dir(self) -> Path:
        return self.run_dir() / "tmp"

    def report_dir(self) -> Path:
        return self.report_root / self.build_id

    def tool_dir(self, tool: str) -> Path:
        return self.report_dir() / REPORT_DIRS.get(tool, tool)

    def sha256sums_txt(self) -> Path:
        return self.report_dir() / "sha256sums.txt"

    def ensure_dirs(self) -> None:
        for p in (self.run_dir(), self.logs_dir(), self.report_dir()):
            p.mkdir(parents=True, exist_ok=True)
