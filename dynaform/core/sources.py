"""
External collaborators of the form engine and local implementations.

The engine talks to three collaborators through small protocols:
- ConfigurationSource supplies form configurations,
- OptionFetcher performs dependent option lookups,
- SubmissionSink accepts validated values and returns a submission ID.

This module ships a JSON-directory configuration source and an in-memory
submission store. The HTTP implementation lives in
dynaform.core.http_client.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dynaform.core.errors import ConfigurationLoadError, SubmissionError
from dynaform.core.schema import DynamicOptionsConfig, FieldOption, FormConfig

logger = logging.getLogger(__name__)


# --- Protocols ---


class ConfigurationSource(Protocol):
    async def list_forms(self) -> list[FormConfig]: ...

    async def get_form(self, form_id: str) -> FormConfig | None: ...


class OptionFetcher(Protocol):
    async def fetch_options(self, config: DynamicOptionsConfig, value: Any) -> list[FieldOption]:
        """Look up options for a dependency value.

        Raises:
            OptionResolutionError: On transport failure or malformed payload.
        """
        ...


class SubmissionSink(Protocol):
    async def submit(self, form_id: str, values: dict[str, Any]) -> str: ...


# --- Submission records ---


class SubmissionRecord(BaseModel):
    """A successful submission, as handed to the table/display layer."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    form_id: str = Field(..., alias="formId")
    values: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- Local implementations ---


class JsonDirectorySource:
    """Loads form configurations from ``*.json`` files in a directory.

    Each file holds one configuration or a list of them. Files are read on
    every call so edits show up without a restart.
    """

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)

    async def list_forms(self) -> list[FormConfig]:
        if not self._directory.is_dir():
            raise ConfigurationLoadError(f"Forms directory '{self._directory}' does not exist")

        forms: list[FormConfig] = []
        for path in sorted(self._directory.glob("*.json")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                entries = raw if isinstance(raw, list) else [raw]
                forms.extend(FormConfig.model_validate(entry) for entry in entries)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                raise ConfigurationLoadError(f"Cannot load form file '{path.name}': {e}") from e

        logger.info("Loaded %d form configuration(s) from %s", len(forms), self._directory)
        return forms

    async def get_form(self, form_id: str) -> FormConfig | None:
        for form in await self.list_forms():
            if form.form_id == form_id:
                return form
        return None


class InMemorySubmissionStore:
    """Submission sink that keeps records in memory.

    Also serves the submissions listing with a dynamic column set: one
    column per value key seen across all records.
    """

    def __init__(self):
        self._records: list[SubmissionRecord] = []
        self._lock = threading.RLock()

    async def submit(self, form_id: str, values: dict[str, Any]) -> str:
        try:
            payload = json.loads(json.dumps(values))
        except (TypeError, ValueError) as e:
            raise SubmissionError(f"Values for form '{form_id}' are not serializable: {e}") from e

        record = SubmissionRecord(id=str(uuid.uuid4()), form_id=form_id, values=payload)
        with self._lock:
            self._records.append(record)
        return record.id

    def get_record(self, submission_id: str) -> SubmissionRecord | None:
        with self._lock:
            for record in self._records:
                if record.id == submission_id:
                    return record
        return None

    def list_records(self) -> list[SubmissionRecord]:
        with self._lock:
            return list(self._records)

    def to_table(self) -> dict[str, Any]:
        """Return ``{columns, data}`` rows for the submissions table."""
        columns: list[str] = []
        rows: list[dict[str, Any]] = []
        for record in self.list_records():
            for key in record.values:
                if key not in columns:
                    columns.append(key)
            rows.append({
                "id": record.id,
                "formId": record.form_id,
                "timestamp": record.timestamp.isoformat(),
                **record.values,
            })
        return {"columns": columns, "data": rows}
