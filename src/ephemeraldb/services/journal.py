"""Fixture lifecycle journal service."""

import json
import os
import tempfile
from datetime import datetime
from typing import Any, Dict, List, Optional

from ephemeraldb.models import Clock, utc_now


class LifecycleJournal:
    """Collects fixture transitions and steps, optionally mirrored to a JSON file."""

    def __init__(self, logger, clock: Clock = utc_now, journal_file: Optional[str] = None):
        self.logger = logger
        self.clock = clock
        self.journal_file = journal_file
        self.journal: Dict[str, Any] = {
            "database": None,
            "state": None,
            "transitions": [],
            "steps": [],
            "error": None,
        }

    @property
    def transitions(self) -> List[Dict[str, Any]]:
        return self.journal["transitions"]

    @property
    def steps(self) -> List[Dict[str, Any]]:
        return self.journal["steps"]

    def start(self, database_name: str, metadata: Optional[Dict[str, Any]] = None):
        self.journal["database"] = database_name
        self.journal["metadata"] = metadata or {}
        self.write()

    def transition(self, state: str, details: Optional[Dict[str, Any]] = None):
        self.journal["state"] = state
        self.journal["transitions"].append(
            {"state": state, "at": self._now(), "details": details or {}}
        )
        self.write()

    def step_started(self, step_name: str, details: Optional[Dict[str, Any]] = None):
        self.journal["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": details or {},
                "error": None,
            }
        )
        self.write()

    def step_finished(
        self,
        step_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        for step in reversed(self.journal["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                step["status"] = status
                step["finished_at"] = self._now()
                step["error"] = error
                if details:
                    step["details"].update(details)
                started_at = datetime.fromisoformat(step["started_at"])
                finished_at = datetime.fromisoformat(step["finished_at"])
                step["duration_seconds"] = (finished_at - started_at).total_seconds()
                break
        if error:
            self.journal["error"] = error
        self.write()

    def write(self):
        if not self.journal_file:
            return

        os.makedirs(os.path.dirname(self.journal_file) or ".", exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            prefix="ephemeraldb-journal-",
            suffix=".json",
            dir=os.path.dirname(self.journal_file) or ".",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.journal, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.journal_file)
        except OSError as exc:
            self.logger.warning("Could not write journal file '%s': %s", self.journal_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    def _now(self) -> str:
        return self.clock().isoformat()
