"""External task providers queried by the poller.

A provider turns ``(external_task_id, api_key)`` into a ProviderStatus.
Transport failures raise TransientProviderError (the poll may be retried);
responses that can never turn into a result raise TerminalProviderError or
come back with a FAILED status.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from constants import (
    DEFAULT_PROVIDER,
    PROVIDER_FAILED_STATUSES,
    PROVIDER_NOT_FOUND_CODES,
    PROVIDER_SUCCESS_STATUSES,
)
from core.config import Settings
from core.logging import get_logger
from services.exceptions import TerminalProviderError, TransientProviderError

logger = get_logger(__name__)


@dataclass
class ProviderStatus:
    """Normalized provider answer."""
    status: str
    result_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status in PROVIDER_SUCCESS_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in PROVIDER_FAILED_STATUSES


class ExternalTaskProvider(Protocol):
    """Protocol for external task providers."""

    name: str

    async def query(self, external_task_id: str, api_key: str) -> ProviderStatus:
        ...


def _first_result_url(container: Any) -> Optional[str]:
    if not isinstance(container, dict):
        return None
    results = container.get('results')
    if isinstance(results, list) and results and isinstance(results[0], dict):
        return results[0].get('url')
    return None


class RunningHubProvider:
    """RunningHub ("rhub") task status API."""

    name = "rhub"

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = settings.rhub_api_url
        self.timeout = settings.provider_timeout
        self._transport = transport

    async def query(self, external_task_id: str, api_key: str) -> ProviderStatus:
        """Query one task.

        Args:
            external_task_id: Provider task id returned at submission
            api_key: Bearer token

        Returns:
            ProviderStatus with the provider's status string

        Raises:
            TransientProviderError: connection / timeout failures
            TerminalProviderError: unexpected status or unparseable body
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json={'taskId': external_task_id},
                    headers={'Authorization': f"Bearer {api_key}"},
                )
        except httpx.TransportError as e:
            raise TransientProviderError(self.name, f"Transport error: {e}") from e

        logger.debug("[Provider] Status response", provider=self.name,
                     external_task_id=external_task_id, http_status=response.status_code)

        if response.status_code >= 400:
            return ProviderStatus('FAILED', error=f"Task not found or expired (HTTP {response.status_code})")
        if response.status_code != 200:
            raise TerminalProviderError(self.name, f"HTTP {response.status_code}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TerminalProviderError(self.name, "Invalid JSON response") from e
        if not isinstance(data, dict) or not data:
            raise TerminalProviderError(self.name, "Invalid JSON response")

        code = data.get('code')
        if code not in (None, 0, '0'):
            message = data.get('msg') or 'Unknown API error'
            try:
                numeric = int(code)
            except (TypeError, ValueError):
                numeric = None
            if numeric in PROVIDER_NOT_FOUND_CODES:
                return ProviderStatus('FAILED', error=f"Task not found: {message}")
            return ProviderStatus('FAILED', error=f"API error (code {code}): {message}")

        task_data: Dict[str, Any] = data.get('data') if isinstance(data.get('data'), dict) else data
        status = task_data.get('status') or data.get('status') or 'UNKNOWN'

        result_url = _first_result_url(task_data) or _first_result_url(data)
        if not result_url:
            output = task_data.get('output')
            if isinstance(output, dict) and output.get('video'):
                result_url = output['video']
            else:
                result_url = task_data.get('resultUrl') or data.get('resultUrl')

        return ProviderStatus(
            status=str(status),
            result_url=result_url,
            error=task_data.get('errorMessage') or data.get('errorMessage') or data.get('msg'),
        )


class ProviderRegistry:
    """Provider lookup by name plus API key resolution."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._providers: Dict[str, ExternalTaskProvider] = {}
        self.register(RunningHubProvider(settings, transport=transport))

    def register(self, provider: ExternalTaskProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: Optional[str]) -> ExternalTaskProvider:
        key = name or DEFAULT_PROVIDER
        provider = self._providers.get(key)
        if provider is None:
            raise TerminalProviderError(key, f"Unknown provider: {key}")
        return provider

    def resolve_api_key(self, name: Optional[str], api_key: Optional[str] = None) -> Optional[str]:
        """Payload key first, then the configured integration key."""
        if api_key:
            return api_key
        return self.settings.integration_keys.get(name or DEFAULT_PROVIDER) or None
