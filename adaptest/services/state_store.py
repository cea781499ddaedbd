"""State Store - versioned, append-friendly persistence for engine state.

Layout under the state directory:
- units.jsonl     one line per unit revision, keyed by unit id
- tests.jsonl     one line per test declaration, keyed by test id
- feedback.jsonl  the append-only FeedbackRecord log

Every line carries a schema version and a kind. Loading replays lines in
order and the last record per key wins, so changing one unit's
dependencies is a single appended line and no full reprocessing.
"""

import json
import threading
from pathlib import Path
from typing import Iterator

import structlog

from ..core.models import FeedbackRecord, TestCase, Unit

logger = structlog.get_logger()

SCHEMA_VERSION = 1


class StateStore:
    """JSON Lines persistence for the unit registry, tests and feedback log."""

    UNITS_FILE = "units.jsonl"
    TESTS_FILE = "tests.jsonl"
    FEEDBACK_FILE = "feedback.jsonl"

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.log = logger.bind(component="state_store", state_dir=str(self.state_dir))

    def _path(self, name: str) -> Path:
        return self.state_dir / name

    def _append(self, name: str, kind: str, key: str, payload: dict, deleted: bool = False) -> None:
        line = json.dumps({
            "schema_version": SCHEMA_VERSION,
            "kind": kind,
            "key": key,
            "deleted": deleted,
            "payload": payload,
        }, sort_keys=True)
        with self._lock:
            with self._path(name).open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _read(self, name: str) -> Iterator[dict]:
        path = self._path(name)
        if not path.exists():
            return
        with path.open(encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    # Torn write
                    self.log.warning("Skipping unreadable state line", file=name, line=line_no, error=str(e))
                    continue
                if entry.get("schema_version", 0) > SCHEMA_VERSION:
                    self.log.warning(
                        "Skipping record from newer schema",
                        file=name,
                        line=line_no,
                        schema_version=entry.get("schema_version"),
                    )
                    continue
                yield entry

    def _latest(self, name: str) -> dict[str, dict]:
        latest: dict[str, dict] = {}
        for entry in self._read(name):
            if entry.get("deleted"):
                latest.pop(entry["key"], None)
            else:
                latest[entry["key"]] = entry["payload"]
        return latest

    # =========================================================================
    # UNITS AND TESTS
    # =========================================================================

    def save_unit(self, unit: Unit) -> None:
        self._append(self.UNITS_FILE, "unit", unit.unit_id, unit.to_dict())

    def delete_unit(self, unit_id: str) -> None:
        self._append(self.UNITS_FILE, "unit", unit_id, {}, deleted=True)

    def load_units(self) -> list[Unit]:
        return [Unit.from_dict(p) for _, p in sorted(self._latest(self.UNITS_FILE).items())]

    def save_test(self, test: TestCase) -> None:
        self._append(self.TESTS_FILE, "test", test.test_id, test.to_dict())

    def delete_test(self, test_id: str) -> None:
        self._append(self.TESTS_FILE, "test", test_id, {}, deleted=True)

    def load_tests(self) -> list[TestCase]:
        return [TestCase.from_dict(p) for _, p in sorted(self._latest(self.TESTS_FILE).items())]

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    def append_feedback(self, record: FeedbackRecord) -> None:
        self._append(
            self.FEEDBACK_FILE,
            "feedback",
            f"{record.run_id}:{record.test_id}",
            record.to_dict(),
        )

    def load_feedback(self) -> Iterator[FeedbackRecord]:
        for entry in self._read(self.FEEDBACK_FILE):
            yield FeedbackRecord.from_dict(entry["payload"])

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def compact(self) -> dict[str, int]:
        """Rewrite unit and test files keeping only the latest record per key.

        The feedback log is never compacted.
        """
        kept = {}
        for name, kind in ((self.UNITS_FILE, "unit"), (self.TESTS_FILE, "test")):
            latest = self._latest(name)
            tmp = self._path(name + ".tmp")
            with self._lock:
                with tmp.open("w", encoding="utf-8") as f:
                    for key, payload in sorted(latest.items()):
                        f.write(json.dumps({
                            "schema_version": SCHEMA_VERSION,
                            "kind": kind,
                            "key": key,
                            "deleted": False,
                            "payload": payload,
                        }, sort_keys=True) + "\n")
                tmp.replace(self._path(name))
            kept[kind] = len(latest)

        self.log.info("State compacted", **kept)
        return kept
