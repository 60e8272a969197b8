"""
Form session: the live state of one form being filled in.

A FormSession owns the current form values and, after every change,
re-derives visibility and the validation schema and refreshes the
dynamic options whose dependency changed. Submission validates the
current values against the latest schema before handing them to the
submission sink.

Lifecycle:
    LOADING -> READY -> SUBMITTING -> SUCCEEDED | FAILED
    LOADING -> UNAVAILABLE            (configuration could not be loaded)
    FAILED  -> READY                  (retry, edit, or submit again)

Values of fields that become hidden are kept, so they reappear if the
field becomes visible again; they are never submitted while hidden.
"""

import logging
from enum import Enum
from typing import Any, NamedTuple

from dynaform.core.errors import (
    ConfigurationLoadError,
    FormValidationError,
    SessionStateError,
    SubmissionError,
)
from dynaform.core.options import OptionResolver, OptionTracker
from dynaform.core.schema import (
    FieldOption,
    FormConfig,
    LeafField,
    SEPARATOR,
    initial_values,
    normalize_values,
)
from dynaform.core.sources import (
    ConfigurationSource,
    InMemorySubmissionStore,
    SubmissionRecord,
    SubmissionSink,
)
from dynaform.core.utils import is_blank
from dynaform.core.validation import GeneratedSchema, generate_schema
from dynaform.core.visibility import evaluate_visibility

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


class Derivation(NamedTuple):
    """Everything derived from one values snapshot."""

    visibility: dict[str, bool]
    schema: GeneratedSchema


def derive(
    fields: list,
    values: dict[str, Any],
    options: dict[str, list[FieldOption]] | None = None,
) -> Derivation:
    """Compute visibility and the validation schema for a values snapshot.

    Pure: reads ``values`` and ``options``, mutates nothing.
    """
    schema = generate_schema(fields, values, options)
    visibility = {rule.field_id: rule.visible for rule in schema.rules.values()}
    return Derivation(visibility, schema)


class FormSession:
    """Manages the state of a single form-editing session.

    Args:
        form_id: ID of the form to load from ``source``.
        source: Supplies the form configuration.
        resolver: Resolves dynamic options. Defaults to a resolver with
            no fetcher, which resolves every dynamic field to no options.
        sink: Receives validated submissions. Defaults to an in-memory store.
        defaults: Initial values (flat or nested), applied over blanks.
    """

    def __init__(
        self,
        form_id: str,
        source: ConfigurationSource | None = None,
        resolver: OptionResolver | None = None,
        sink: SubmissionSink | None = None,
        defaults: dict[str, Any] | None = None,
    ):
        self.form_id = form_id
        self.status = SessionStatus.LOADING
        self.config: FormConfig | None = None
        self.values: dict[str, Any] = {}
        self.visibility: dict[str, bool] = {}
        self.schema: GeneratedSchema | None = None
        self.errors: dict[str, list[str]] = {}
        self.last_error: str | None = None
        self.last_submission: SubmissionRecord | None = None

        self._source = source
        self._sink = sink if sink is not None else InMemorySubmissionStore()
        self._defaults = dict(defaults or {})
        self._options = OptionTracker(
            resolver or OptionResolver(),
            on_resolved=self._on_options_resolved,
        )

    @classmethod
    def from_config(
        cls,
        config: FormConfig,
        resolver: OptionResolver | None = None,
        sink: SubmissionSink | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> "FormSession":
        """Create a session that is READY immediately for an in-hand config."""
        session = cls(config.form_id, resolver=resolver, sink=sink, defaults=defaults)
        session._start(config)
        return session

    # -----------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------

    async def load(self) -> None:
        """Fetch the configuration and enter READY.

        Raises:
            ConfigurationLoadError: If the source fails or has no such form;
                the session is then UNAVAILABLE.
            SessionStateError: If the session is not LOADING.
        """
        if self.status is not SessionStatus.LOADING:
            raise SessionStateError(f"Session already {self.status.value}")
        if self._source is None:
            self._fail_load("No configuration source")

        try:
            config = await self._source.get_form(self.form_id)
        except ConfigurationLoadError as e:
            self._fail_load(str(e), cause=e)
        except Exception as e:
            self._fail_load(f"Configuration source error: {e}", cause=e)

        if config is None:
            self._fail_load(f"Form '{self.form_id}' not found")
        self._start(config)

    def _fail_load(self, message: str, cause: Exception | None = None) -> None:
        self.status = SessionStatus.UNAVAILABLE
        self.last_error = message
        logger.error("Form '%s' unavailable: %s", self.form_id, message)
        raise ConfigurationLoadError(message) from cause

    def _start(self, config: FormConfig) -> None:
        self.config = config
        values = initial_values(config.fields)
        values.update(normalize_values(config.fields, self._defaults))
        self._apply(values)
        self.status = SessionStatus.READY
        logger.info("Form '%s' ready with %d fields", self.form_id, len(self.fields))

    # -----------------------------------------------------------------
    # Field resolution
    # -----------------------------------------------------------------

    @property
    def fields(self) -> list[LeafField]:
        """Flattened leaf fields of the loaded form."""
        return self.config.leaf_fields if self.config is not None else []

    def get_field(self, field_id: str) -> LeafField | None:
        for field in self.fields:
            if field.id == field_id:
                return field
        return None

    def is_visible(self, field_id: str) -> bool:
        return self.visibility.get(field_id, False)

    def get_visible_fields(self) -> list[LeafField]:
        return [field for field in self.fields if self.is_visible(field.id)]

    def get_options(self, field_id: str) -> list[FieldOption]:
        """Current options of a selection field: static, or last resolved."""
        field = self.get_field(field_id)
        static = getattr(field, "options", None)
        if static is not None:
            return list(static)
        return self._options.options_for(field_id)

    def is_busy(self, field_id: str) -> bool:
        """True while a dynamic options lookup for the field is in flight."""
        return self._options.is_loading(field_id)

    def get_missing_required_fields(self) -> list[LeafField]:
        """Visible, required fields that have no value yet."""
        required = set(self.schema.required_fields) if self.schema else set()
        return [
            field for field in self.fields
            if field.id in required and is_blank(self.values.get(field.id))
        ]

    def is_complete(self) -> bool:
        return not self.get_missing_required_fields()

    def live_errors(self) -> dict[str, list[str]]:
        """Validate the current values without submitting."""
        return self.schema.collect_errors(self.values) if self.schema else {}

    # -----------------------------------------------------------------
    # Value management
    # -----------------------------------------------------------------

    def get_value(self, field_id: str) -> Any:
        return self.values.get(field_id)

    def get_visible_values(self) -> dict[str, Any]:
        return {k: v for k, v in self.values.items() if self.is_visible(k)}

    def set_value(self, field_id: str, value: Any) -> Derivation:
        """Set one field's value and re-derive.

        Raises:
            ValueError: If ``field_id`` names no leaf field.
            SessionStateError: If the session cannot be edited right now.
        """
        return self.set_values({field_id: value})

    def set_values(self, updates: dict[str, Any]) -> Derivation:
        """Set several values at once (flat or group-nested) and re-derive once.

        Either every update is applied or none is.
        """
        self._ensure_editable()
        known = {field.id for field in self.fields}
        unknown = [
            key for key in updates
            if key not in known and not any(fid.startswith(f"{key}{SEPARATOR}") for fid in known)
        ]
        if unknown:
            raise ValueError(f"Field '{unknown[0]}' does not exist in the form")

        flat = normalize_values(self.config.fields, updates)
        values = dict(self.values)
        values.update(flat)
        if self.status in (SessionStatus.FAILED, SessionStatus.SUCCEEDED):
            self.status = SessionStatus.READY
        derivation = self._apply(values)
        for field_id in flat:
            self.errors.pop(field_id, None)
        return derivation

    def clear_value(self, field_id: str) -> Derivation:
        """Reset a field to its blank value."""
        field = self.get_field(field_id)
        if field is None:
            raise ValueError(f"Field '{field_id}' does not exist in the form")
        return self.set_value(field_id, initial_values([field])[field.id])

    def reset(self) -> Derivation:
        """Discard all entered values and start over from the defaults."""
        if self.config is None:
            raise SessionStateError("Form is not loaded")
        if self.status is SessionStatus.SUBMITTING:
            raise SessionStateError("Cannot reset while submitting")
        self._options.cancel_all()
        self.errors = {}
        self._start(self.config)
        return Derivation(self.visibility, self.schema)

    # -----------------------------------------------------------------
    # Options
    # -----------------------------------------------------------------

    async def wait_for_options(self) -> None:
        """Wait for every pending dynamic options lookup to settle."""
        await self._options.wait()

    def close(self) -> None:
        """Abandon pending options lookups."""
        self._options.cancel_all()

    # -----------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------

    async def submit(self) -> SubmissionRecord | None:
        """Validate the current values and hand them to the submission sink.

        Pending option lookups are awaited first, so values are checked
        against the options of the latest dependency values.

        Returns:
            The submission record, or None when validation failed; the
            messages are then in ``errors`` and the sink was not called.

        Raises:
            SubmissionError: If the sink fails. Status becomes FAILED and
                the entered values are kept.
            SessionStateError: If the session is not ready to submit.
        """
        if self.status is SessionStatus.FAILED:
            self.retry()
        if self.status is not SessionStatus.READY:
            raise SessionStateError(f"Cannot submit while {self.status.value}")

        self.status = SessionStatus.SUBMITTING
        try:
            await self._options.wait()
        except BaseException:
            self.status = SessionStatus.READY
            raise
        self.schema = derive(self.fields, self.values, self._options.resolved_options()).schema

        try:
            data = self.schema.validate(self.values)
        except FormValidationError as e:
            self.errors = e.errors
            self.status = SessionStatus.READY
            logger.info("Form '%s' has errors in: %s", self.form_id, ", ".join(e.errors))
            return None

        self.errors = {}
        try:
            submission_id = await self._sink.submit(self.form_id, data)
        except SubmissionError as e:
            self._fail_submit(str(e))
            raise
        except Exception as e:
            self._fail_submit(str(e))
            raise SubmissionError(f"Submission of form '{self.form_id}' failed: {e}") from e
        except BaseException:
            # Cancelled mid-flight: the outcome is unknown
            self._fail_submit("Submission was cancelled")
            raise

        record = None
        if hasattr(self._sink, "get_record"):
            record = self._sink.get_record(submission_id)
        if record is None:
            record = SubmissionRecord(id=submission_id, form_id=self.form_id, values=data)
        self.last_submission = record
        self.last_error = None
        self.status = SessionStatus.SUCCEEDED
        logger.info("Form '%s' submitted as %s", self.form_id, submission_id)
        return record

    def retry(self) -> None:
        """Leave FAILED for READY, keeping the entered values."""
        if self.status is not SessionStatus.FAILED:
            raise SessionStateError(f"Nothing to retry while {self.status.value}")
        self.status = SessionStatus.READY

    def _fail_submit(self, message: str) -> None:
        self.status = SessionStatus.FAILED
        self.last_error = message
        logger.warning("Submission of form '%s' failed: %s", self.form_id, message)

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _ensure_editable(self) -> None:
        if self.status in (SessionStatus.LOADING, SessionStatus.UNAVAILABLE):
            raise SessionStateError("Form is not loaded")
        if self.status is SessionStatus.SUBMITTING:
            raise SessionStateError("Cannot edit while submitting")

    def _apply(self, values: dict[str, Any]) -> Derivation:
        """Derive from a new snapshot, then commit it and refresh options.

        Nothing is committed unless derivation succeeds.
        """
        fields = self.fields
        visibility = evaluate_visibility(fields, values)
        stale = self._options.stale_fields(fields, values, visibility)
        options = {
            field_id: opts
            for field_id, opts in self._options.resolved_options().items()
            if field_id not in stale
        }
        derivation = derive(fields, values, options)

        self.values = values
        self.visibility, self.schema = derivation
        self._options.sync(fields, values, derivation.visibility)
        return derivation

    def _on_options_resolved(self, field_id: str) -> None:
        # Fresh options change which values a select accepts
        self.schema = derive(self.fields, self.values, self._options.resolved_options()).schema
