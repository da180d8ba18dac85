"""Centralized constants for node types and artifact handling.

Single source of truth for node type sets used by the dispatcher, the
orchestrator and the gallery writer.
"""

from typing import Dict, FrozenSet

# =============================================================================
# BUILT-IN NODE TYPES
# =============================================================================

DELAY_NODE_TYPE = "delay"
CONDITION_NODE_TYPE = "condition"
MANUAL_TRIGGER_TYPE = "manual-trigger"

# Nodes that hand their input straight through
PASSTHROUGH_NODE_TYPES: FrozenSet[str] = frozenset([
    'start-flow',
    'manual-trigger',
    'flow-merge',
])

# Nodes whose external task id does not mean "poll for a result later"
SYNCHRONOUS_RESULT_NODE_TYPES: FrozenSet[str] = frozenset([
    'social-post',
])

CONDITION_OPERATORS: FrozenSet[str] = frozenset([
    'exists',
    'empty',
    'contains',
    'equals',
])

# =============================================================================
# EXTERNAL PROVIDERS
# =============================================================================

DEFAULT_PROVIDER = "rhub"

# Base URLs for plugin API nodes; overridable through settings
PROVIDER_BASE_URLS: Dict[str, str] = {
    'jsoncut': 'https://api.jsoncut.com',
    'runninghub': 'https://api.runninghub.ai',
    'kie': 'https://api.kie.ai',
    'postforme': 'https://api.postforme.dev',
}

PROVIDER_SUCCESS_STATUSES: FrozenSet[str] = frozenset(['SUCCESS', 'completed'])
PROVIDER_FAILED_STATUSES: FrozenSet[str] = frozenset(['FAILED', 'failed'])

# API codes meaning the external task id is unknown to the provider
PROVIDER_NOT_FOUND_CODES: FrozenSet[int] = frozenset([404, 40001, 40002, 50001])

# =============================================================================
# ARTIFACTS
# =============================================================================

MIME_EXTENSIONS: Dict[str, str] = {
    'image/jpeg': 'jpg',
    'image/jpg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif',
    'video/mp4': 'mp4',
    'video/webm': 'webm',
    'audio/mpeg': 'mp3',
    'audio/mp3': 'mp3',
    'audio/wav': 'wav',
}

IMAGE_EXTENSIONS: FrozenSet[str] = frozenset(['jpg', 'jpeg', 'png', 'gif', 'webp'])
AUDIO_EXTENSIONS: FrozenSet[str] = frozenset(['mp3', 'wav', 'ogg', 'm4a'])


def gallery_item_type(url: str) -> str:
    """Classify an artifact URL as image, audio or video (the default)."""
    path = url.split('?', 1)[0].split('#', 1)[0]
    ext = path.rsplit('.', 1)[-1].lower() if '.' in path.rsplit('/', 1)[-1] else ''
    if ext in IMAGE_EXTENSIONS:
        return 'image'
    if ext in AUDIO_EXTENSIONS:
        return 'audio'
    return 'video'
