"""
Option resolution for selection fields.

Static option lists are returned as-is. A select field with
``dynamicOptions`` fetches its list from an external endpoint keyed by the
current value of the field it depends on.

OptionTracker keeps the per-field state a session needs around those
lookups: the trigger token (the dependency value a lookup was started
for), the last resolved options and a busy flag. A lookup superseded by a
newer dependency value is cancelled, and a result that still arrives for
a token that is no longer current is discarded, so the options always
reflect the latest trigger value rather than the latest completion.
"""

import asyncio
import logging
from dataclasses import dataclass, field as dc_field
from typing import Any, Callable

from pydantic import TypeAdapter

from dynaform.core.errors import OptionResolutionError
from dynaform.core.schema import FieldOption, SelectField, get_value
from dynaform.core.sources import OptionFetcher
from dynaform.core.utils import is_blank

logger = logging.getLogger(__name__)

_OPTION_LIST = TypeAdapter(list[FieldOption])


def parse_option_payload(payload: Any) -> list[FieldOption]:
    """Read an option list from an endpoint payload.

    Accepts a list of strings or label/value objects, or an object that
    wraps exactly one such list (``{"states": [...]}``). Order is kept.

    Raises:
        ValueError: If the payload has any other shape.
    """
    if isinstance(payload, dict):
        lists = [value for value in payload.values() if isinstance(value, list)]
        if len(lists) != 1:
            raise ValueError("Expected an object wrapping exactly one option list")
        payload = lists[0]
    return _OPTION_LIST.validate_python(payload)


class OptionResolver:
    """Resolves the option list for a selection field.

    Args:
        fetcher: Performs lookups against option endpoints. May be None
            for forms that only use static options.
    """

    def __init__(self, fetcher: OptionFetcher | None = None):
        self._fetcher = fetcher

    async def resolve_options(self, field, values: dict[str, Any]) -> list[FieldOption]:
        """Return the options for ``field`` given the current values.

        Never raises for lookup failures: they are logged and reported as
        an empty list.
        """
        static = getattr(field, "options", None)
        if static is not None:
            return static

        config = getattr(field, "dynamic_options", None)
        if config is None:
            return []

        dependent = get_value(values, config.depends_on)
        if is_blank(dependent):
            return []

        if self._fetcher is None:
            logger.warning(
                "No option fetcher configured; '%s' resolves to no options", field.id
            )
            return []

        try:
            return await self._fetcher.fetch_options(config, dependent)
        except OptionResolutionError as e:
            logger.warning("Options for '%s' unavailable: %s", field.id, e)
            return []
        except Exception as e:
            logger.error("Unexpected error resolving options for '%s': %s", field.id, e, exc_info=True)
            return []


_UNSET = object()


def _same_token(left: Any, right: Any) -> bool:
    return type(left) is type(right) and left == right


def _dynamic_fields(fields: list) -> list[SelectField]:
    return [
        field for field in fields
        if isinstance(field, SelectField) and field.dynamic_options is not None
    ]


def _wanted_token(field: SelectField, values: dict[str, Any], visibility: dict[str, bool]) -> Any:
    """The dependency value to look up, or None when nothing should be fetched."""
    dependent = get_value(values, field.dynamic_options.depends_on)
    if visibility.get(field.id, False) and not is_blank(dependent):
        return dependent
    return None


@dataclass
class OptionSlot:
    """Resolution state of one dynamic select field."""

    token: Any = _UNSET
    options: list[FieldOption] = dc_field(default_factory=list)
    loading: bool = False
    task: asyncio.Task | None = None
    deferred: tuple | None = None


class OptionTracker:
    """Tracks in-flight and resolved dynamic options for one form session.

    Args:
        resolver: The resolver used to run lookups.
        on_resolved: Called with the field ID after fresh options land.
    """

    def __init__(
        self,
        resolver: OptionResolver,
        on_resolved: Callable[[str], None] | None = None,
    ):
        self._resolver = resolver
        self._on_resolved = on_resolved
        self._slots: dict[str, OptionSlot] = {}

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def options_for(self, field_id: str) -> list[FieldOption]:
        slot = self._slots.get(field_id)
        return list(slot.options) if slot else []

    def is_loading(self, field_id: str) -> bool:
        slot = self._slots.get(field_id)
        return bool(slot and slot.loading)

    def resolved_options(self) -> dict[str, list[FieldOption]]:
        """Options of every tracked field that is not mid-lookup."""
        return {
            field_id: list(slot.options)
            for field_id, slot in self._slots.items()
            if not slot.loading
        }

    # -----------------------------------------------------------------
    # Refresh
    # -----------------------------------------------------------------

    def stale_fields(self, fields: list, values: dict[str, Any], visibility: dict[str, bool]) -> set[str]:
        """IDs of dynamic fields whose options sync() would invalidate. Pure."""
        stale: set[str] = set()
        for field in _dynamic_fields(fields):
            slot = self._slots.get(field.id, OptionSlot())
            if not _same_token(slot.token, _wanted_token(field, values, visibility)):
                stale.add(field.id)
        return stale

    def sync(self, fields: list, values: dict[str, Any], visibility: dict[str, bool]) -> list[str]:
        """Start lookups for dynamic fields whose trigger token changed.

        The token is the dependency's value while the field is visible and
        the dependency is answered; otherwise there is nothing to look up
        and the field's options are cleared.

        Returns:
            IDs of the fields whose options were invalidated.
        """
        changed: list[str] = []
        for field in _dynamic_fields(fields):
            wanted = _wanted_token(field, values, visibility)
            slot = self._slots.setdefault(field.id, OptionSlot())
            if _same_token(slot.token, wanted):
                continue

            self._abandon(slot)
            slot.token = wanted
            slot.options = []
            changed.append(field.id)

            if wanted is None:
                continue

            slot.loading = True
            self._start(field, dict(values), wanted, slot)
        return changed

    async def wait(self) -> None:
        """Wait until every pending lookup has finished or been superseded."""
        while True:
            for slot in self._slots.values():
                if slot.deferred is not None:
                    field, values = slot.deferred
                    slot.deferred = None
                    self._start(field, values, slot.token, slot)

            pending = [
                slot.task for slot in self._slots.values()
                if slot.task is not None and not slot.task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def cancel_all(self) -> None:
        """Abandon every pending lookup without touching resolved options."""
        for slot in self._slots.values():
            if slot.loading:
                self._abandon(slot)
                slot.token = _UNSET

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _start(self, field, values: dict[str, Any], token: Any, slot: OptionSlot) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop yet: the lookup starts on the next wait()
            slot.deferred = (field, values)
            return
        slot.task = loop.create_task(self._run(field, values, token))

    def _abandon(self, slot: OptionSlot) -> None:
        if slot.task is not None and not slot.task.done():
            slot.task.cancel()
        slot.task = None
        slot.deferred = None
        slot.loading = False

    async def _run(self, field, values: dict[str, Any], token: Any) -> None:
        options = await self._resolver.resolve_options(field, values)

        slot = self._slots.get(field.id)
        if slot is None or not _same_token(slot.token, token):
            logger.debug("Discarding stale options for '%s' (trigger %r)", field.id, token)
            return

        slot.options = options
        slot.loading = False
        slot.task = None
        logger.debug("Resolved %d options for '%s'", len(options), field.id)

        if self._on_resolved is not None:
            self._on_resolved(field.id)
