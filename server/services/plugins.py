"""Plugin node source.

Plugins are directories holding a ``plugin.json`` definition::

    {
        "id": "video-gen",
        "enabled": true,
        "nodeTypes": ["video-gen"],
        "executionType": "api",
        "apiConfig": {"provider": "runninghub", "endpoint": "/task/openapi/create",
                      "pollProvider": "rhub"},
        "apiMapping": {
            "request": {"prompt": "{{prompt}}", "apiKey": "{{apiKey}}"},
            "response": {"taskId": "$.data.taskId"},
            "result": {"resultUrl": "$.data.url"}
        }
    }

``local`` plugins map their input straight to output; ``api`` plugins POST a
templated request body to the provider and map the JSON response back.

Usage:
    plugins = PluginManager(settings) if settings.plugins_dir else NullPluginManager()
    result = await plugins.execute_node("video-gen", input_data)
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx

from constants import DEFAULT_PROVIDER, PROVIDER_BASE_URLS
from core.config import Settings
from core.logging import get_logger
from services.exceptions import UnknownNodeType

logger = get_logger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{(.*?)\}\}")

# Local input nodes expose their URL under the media kind
_MEDIA_INPUT_TYPES = ('image-input', 'video-input', 'audio-input')


class NodePlugin(Protocol):
    """Protocol for plugin node sources (enables duck typing)."""

    def knows(self, node_type: str) -> bool:
        ...

    async def execute_node(self, node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """Run a plugin node. Raises UnknownNodeType for types it does not define."""
        ...


class NullPluginManager:
    """No plugins installed.

    This follows the Null Object pattern - every node type is unknown so
    dispatch falls through to the built-in handlers.
    """

    def knows(self, node_type: str) -> bool:
        return False

    async def execute_node(self, node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
        raise UnknownNodeType(node_type)


# =============================================================================
# Template helpers
# =============================================================================

def _lookup(data: Any, path: str, strip_scope: bool = False) -> Any:
    parts = [p for p in path.strip().split('.') if p]
    if strip_scope and parts and parts[0] in ('inputs', 'data'):
        parts = parts[1:]
    current = data
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def map_request(template: Any, data: Dict[str, Any]) -> Any:
    """Render ``{{path}}`` placeholders. A value that is only a placeholder
    keeps the referenced value's type."""
    if isinstance(template, dict):
        return {k: map_request(v, data) for k, v in template.items()}
    if isinstance(template, list):
        return [map_request(v, data) for v in template]
    if not isinstance(template, str):
        return template
    match = _TEMPLATE_RE.search(template)
    if not match:
        return template
    value = _lookup(data, match.group(1), strip_scope=True)
    if template == match.group(0):
        return value
    return template.replace(match.group(0), '' if value is None else str(value))


def map_response(template: Any, data: Any) -> Any:
    """Resolve ``$.path`` selectors against a JSON response."""
    if isinstance(template, dict):
        return {k: map_response(v, data) for k, v in template.items()}
    if isinstance(template, str) and template.startswith('$.'):
        return _lookup(data, template[2:])
    return template


# =============================================================================
# Definition-backed plugin manager
# =============================================================================

class PluginManager:
    """Loads enabled plugin definitions from ``settings.plugins_dir``."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._plugins: Dict[str, Dict[str, Any]] = {}
        self._node_definitions: Dict[str, Dict[str, Any]] = {}
        self._loaded = False

    def load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.settings.plugins_dir:
            return
        root = Path(self.settings.plugins_dir)
        if not root.is_dir():
            logger.warning("[Plugins] Directory not found", path=str(root))
            return
        for manifest in sorted(root.glob('*/plugin.json')):
            try:
                definition = json.loads(manifest.read_text(encoding='utf-8'))
            except (OSError, ValueError) as e:
                logger.error("[Plugins] Invalid plugin.json", path=str(manifest), error=str(e))
                continue
            self.register(definition)
        logger.info("[Plugins] Loaded", plugins=len(self._plugins), node_types=len(self._node_definitions))

    def register(self, definition: Dict[str, Any]) -> None:
        """Register one plugin definition (disabled plugins are ignored)."""
        if not definition.get('enabled'):
            return
        plugin_id = definition.get('id') or definition.get('name') or 'plugin'
        self._plugins[plugin_id] = definition
        for node_type in definition.get('nodeTypes', []):
            self._node_definitions[node_type] = definition

    def knows(self, node_type: str) -> bool:
        self.load()
        return node_type in self._node_definitions

    async def execute_node(self, node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
        self.load()
        definition = self._node_definitions.get(node_type)
        if definition is None:
            raise UnknownNodeType(node_type)

        exec_type = definition.get('executionType')
        logger.debug("[Plugins] Executing node", node_type=node_type, execution_type=exec_type)
        if exec_type == 'local':
            return self._execute_local(node_type, input_data)
        if exec_type == 'api':
            return await self._execute_api(node_type, input_data, definition)
        return {'success': False, 'error': f"Unsupported execution type: {exec_type}"}

    def _execute_local(self, node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
        if node_type in _MEDIA_INPUT_TYPES:
            url = input_data.get('url')
            upload = input_data.get('file') or {}
            if input_data.get('source') == 'upload' and upload.get('url'):
                url = upload['url']
            if not url:
                return {'success': False, 'error': 'No media URL provided. Please upload a file or provide a URL.'}
            kind = node_type.replace('-input', '')
            return {'success': True, 'resultUrl': url, 'output': {kind: url}}
        if node_type == 'text-input':
            return {'success': True, 'output': {'text': input_data.get('text', '')}}
        return {'success': True, 'output': dict(input_data)}

    def _resolve_api_key(self, provider: str, input_data: Dict[str, Any]) -> str:
        return input_data.get('apiKey') or self.settings.integration_keys.get(provider, '')

    async def _execute_api(self, node_type: str, input_data: Dict[str, Any],
                           definition: Dict[str, Any]) -> Dict[str, Any]:
        api_config = definition.get('apiConfig')
        mapping = definition.get('apiMapping')
        if not api_config or not mapping:
            return {'success': False, 'error': f"Missing API configuration for {node_type}"}

        provider = api_config.get('provider', 'custom')
        data = dict(input_data)
        api_key = self._resolve_api_key(provider, data)
        if not api_key:
            return {'success': False,
                    'error': "API key not provided. Please configure it in the Integration tab or node settings."}
        data['apiKey'] = api_key
        if 'text' in data and 'prompt' not in data:
            data['prompt'] = data['text']

        base_url = self.settings.provider_base_urls.get(provider) or PROVIDER_BASE_URLS.get(provider)
        endpoint = api_config.get('endpoint') or ''
        if endpoint.startswith(('http://', 'https://')):
            url = endpoint
        elif base_url:
            url = base_url.rstrip('/') + '/' + endpoint.lstrip('/')
        else:
            return {'success': False, 'error': f"Unknown provider: {provider}"}

        body = map_request(mapping.get('request', {}), data)
        try:
            async with httpx.AsyncClient(timeout=self.settings.plugin_api_timeout,
                                         transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={'Authorization': f"Bearer {api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error("[Plugins] API call failed", node_type=node_type, provider=provider, error=str(e))
            return {'success': False, 'error': f"{provider} request failed: {e}"}

        if response.status_code >= 400:
            return {'success': False, 'error': f"{provider} API returned HTTP {response.status_code}"}
        try:
            payload = response.json()
        except ValueError:
            return {'success': False, 'error': f"{provider} API returned invalid JSON"}

        code = payload.get('code') if isinstance(payload, dict) else None
        if code not in (None, 0, '0'):
            message = payload.get('msg') or 'API error'
            if isinstance(message, str) and 'required_input_missing' in message:
                message = 'Required input is missing. Please check all inputs are connected.'
            return {'success': False, 'error': f"{provider} API error (code {code}): {message}"}

        mapped = map_response(mapping.get('response', {}), payload) if 'response' in mapping else {}
        output = map_response(mapping.get('result', {}), payload) if 'result' in mapping else {}

        return {
            'success': True,
            'taskId': mapped.get('taskId'),
            'resultUrl': output.get('resultUrl'),
            'output': output,
            'provider': api_config.get('pollProvider', DEFAULT_PROVIDER),
            'apiKey': api_key,
        }
