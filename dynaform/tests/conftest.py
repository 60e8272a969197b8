"""
Shared test fixtures and helpers for the dynaform test suite.

Provides fake collaborators (an option fetcher whose lookups can be held
open, and submission sinks that record or fail) plus loaders for the
bundled example forms.
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from dynaform.core.errors import OptionResolutionError
from dynaform.core.schema import DynamicOptionsConfig, FieldOption, FormConfig

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"

STATES_BY_COUNTRY = {
    "USA": ["California", "New York", "Texas"],
    "Canada": ["Ontario", "Quebec"],
}


def load_form_dict(filename: str) -> dict:
    """Load a bundled form configuration as a raw dict."""
    with open(SCHEMAS_DIR / filename, encoding="utf-8") as f:
        return json.load(f)


def load_form(filename: str) -> FormConfig:
    return FormConfig.model_validate(load_form_dict(filename))


class FakeOptionFetcher:
    """Option fetcher backed by a lookup table.

    Every call is recorded as (endpoint, value). When ``gated`` is set,
    lookups wait until release() so tests can interleave edits with
    in-flight lookups.
    """

    def __init__(self, table: dict[Any, list[str]] | None = None, gated: bool = False):
        self.table = table if table is not None else {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_for: set[Any] = set()
        self._gate = asyncio.Event() if gated else None

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def fetch_options(self, config: DynamicOptionsConfig, value: Any) -> list[FieldOption]:
        self.calls.append((config.endpoint, value))
        if self._gate is not None:
            await self._gate.wait()
        if value in self.fail_for:
            raise OptionResolutionError(config.endpoint, "HTTP 500")
        return [FieldOption(label=item, value=item) for item in self.table.get(value, [])]


class RecordingSink:
    """Submission sink that keeps every submission it accepts."""

    def __init__(self):
        self.submissions: list[tuple[str, dict[str, Any]]] = []

    async def submit(self, form_id: str, values: dict[str, Any]) -> str:
        self.submissions.append((form_id, values))
        return f"sub-{len(self.submissions)}"


class FailingSink:
    """Submission sink that always fails, counting attempts."""

    def __init__(self, error: Exception | None = None):
        self.error = error or ConnectionError("backend unreachable")
        self.attempts = 0

    async def submit(self, form_id: str, values: dict[str, Any]) -> str:
        self.attempts += 1
        raise self.error


@pytest.fixture
def health_form() -> FormConfig:
    return load_form("health_insurance.json")


@pytest.fixture
def car_form() -> FormConfig:
    return load_form("car_insurance.json")


@pytest.fixture
def home_form() -> FormConfig:
    return load_form("home_insurance.json")


@pytest.fixture
def state_form() -> FormConfig:
    """A minimal form with a select whose options depend on 'state'."""
    return FormConfig.model_validate({
        "formId": "cities",
        "title": "Cities",
        "fields": [
            {"id": "state", "label": "State", "type": "text"},
            {
                "id": "city",
                "label": "City",
                "type": "select",
                "required": True,
                "dynamicOptions": {"dependsOn": "state", "endpoint": "/api/cities"},
            },
        ],
    })
