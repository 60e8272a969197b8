"""
HTTP client for the remote forms API.

Implements all three collaborators (configuration source, option fetcher
and submission sink) against an HTTP backend, configured from environment
variables.
"""

import logging
import os
from typing import Any

import httpx
from dotenv import load_dotenv

from dynaform.core.errors import ConfigurationLoadError, OptionResolutionError, SubmissionError
from dynaform.core.options import parse_option_payload
from dynaform.core.schema import SEPARATOR, DynamicOptionsConfig, FieldOption, FormConfig
from dynaform.core.utils import is_truthy

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://assignment.devotel.io"
DEFAULT_TIMEOUT_SECONDS = 10.0


def _build_safe_curl(request: httpx.Request) -> str:
    """Build a debug curl command with sensitive headers redacted."""
    curl = f"curl -X {request.method} '{request.url}'"
    for key, value in request.headers.items():
        header_value = value
        if key.lower() in {"authorization", "x-api-key", "api-key", "cookie"}:
            header_value = "[REDACTED]"
        curl += f" -H '{key}: {header_value}'"

    if request.content:
        body = request.content.decode(errors="ignore")
        max_body_chars = 2000
        if len(body) > max_body_chars:
            body = body[:max_body_chars] + "... [TRUNCATED]"
        curl += f" -d '{body}'"
    return curl


class CurlLoggingAsyncClient(httpx.AsyncClient):
    async def send(self, request, *args, **kwargs):
        if is_truthy(os.getenv("LOG_HTTP_CURL"), default=False):
            logger.debug("Outgoing request (sanitized): %s", _build_safe_curl(request))
        return await super().send(request, *args, **kwargs)


class FormApiClient:
    """Forms API collaborator backed by an httpx.AsyncClient.

    Args:
        client: A configured async client; its base_url is the API root.
    """

    FORMS_PATH = "api/insurance/forms"
    SUBMIT_PATH = "api/insurance/forms/submit"
    SUBMISSIONS_PATH = "api/insurance/forms/submissions"

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------
    # Configuration source
    # -----------------------------------------------------------------

    async def list_forms(self) -> list[FormConfig]:
        try:
            response = await self._client.get(self.FORMS_PATH)
            response.raise_for_status()
            return [FormConfig.model_validate(entry) for entry in response.json()]
        except (httpx.HTTPError, ValueError) as e:
            # pydantic's ValidationError and JSON decode errors are ValueErrors
            raise ConfigurationLoadError(f"Cannot load form configurations: {e}") from e

    async def get_form(self, form_id: str) -> FormConfig | None:
        for form in await self.list_forms():
            if form.form_id == form_id:
                return form
        return None

    # -----------------------------------------------------------------
    # Option fetcher
    # -----------------------------------------------------------------

    async def fetch_options(self, config: DynamicOptionsConfig, value: Any) -> list[FieldOption]:
        """Look up options keyed by the dependency value.

        GET sends the value as a query parameter named after the dependency
        field (the last segment of its flattened ID, merged with any query
        already on the endpoint); POST sends the same pair as a JSON body.
        """
        params = {config.depends_on.rsplit(SEPARATOR, 1)[-1]: value}
        try:
            if config.method == "GET":
                url = httpx.URL(config.endpoint).copy_merge_params(params)
                response = await self._client.get(url)
            else:
                response = await self._client.post(config.endpoint, json=params)
            response.raise_for_status()
            return parse_option_payload(response.json())
        except httpx.HTTPError as e:
            raise OptionResolutionError(config.endpoint, str(e)) from e
        except ValueError as e:
            raise OptionResolutionError(config.endpoint, f"malformed payload: {e}") from e

    # -----------------------------------------------------------------
    # Submission sink
    # -----------------------------------------------------------------

    async def submit(self, form_id: str, values: dict[str, Any]) -> str:
        try:
            response = await self._client.post(
                self.SUBMIT_PATH, json={"formId": form_id, "data": values}
            )
            response.raise_for_status()
            return str(response.json()["id"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise SubmissionError(f"Submission of form '{form_id}' failed: {e}") from e

    async def list_submissions(self) -> dict[str, Any]:
        """Fetch prior submissions as ``{columns, data}``."""
        try:
            response = await self._client.get(self.SUBMISSIONS_PATH)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SubmissionError(f"Cannot load submissions: {e}") from e


def get_form_client(**kwargs) -> FormApiClient:
    """Create a FormApiClient from environment variables.

    Keyword arguments override environment defaults.

    Environment variables:
        FORM_API_BASE_URL: Root URL of the forms API.
        FORM_API_TIMEOUT_SECONDS: Request timeout (default 10).
        FORM_API_SSL_VERIFY: Verify TLS certificates (default true).
        LOG_HTTP_CURL: Log each outgoing request as a sanitized curl line.
    """
    base_url = kwargs.pop("base_url", os.getenv("FORM_API_BASE_URL", DEFAULT_BASE_URL))
    timeout = float(
        kwargs.pop("timeout", os.getenv("FORM_API_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
    )
    verify_ssl = kwargs.pop("verify", is_truthy(os.getenv("FORM_API_SSL_VERIFY"), default=True))

    client = CurlLoggingAsyncClient(
        base_url=base_url,
        timeout=timeout,
        verify=verify_ssl,
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        **kwargs,
    )
    return FormApiClient(client)
