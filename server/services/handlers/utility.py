"""Built-in node handlers - Delay, Condition, pass-through flow nodes.

Handlers return the collaborator result dict
``{"success", "output", "taskId", "resultUrl", "error"}`` plus, for delay,
``deferSeconds``.
"""

from typing import Any, Dict

from core.logging import get_logger
from constants import CONDITION_OPERATORS

logger = get_logger(__name__)


def _is_empty(value: Any) -> bool:
    """Emptiness as workflow authors expect it: "0" and 0 count as empty."""
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value == "" or value == "0"
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _loose_equals(left: Any, right: Any) -> bool:
    """Equality that tolerates the string/number mix produced by form inputs."""
    if left == right:
        return True
    if left is None or right is None:
        other = right if left is None else left
        return other in ("", 0, [], {})
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        try:
            return float(left) == float(right)
        except (TypeError, ValueError):
            return False
    return str(left) == str(right)


# =============================================================================
# FLOW CONTROL HANDLERS
# =============================================================================

async def handle_delay(
    node_type: str,
    input_data: Dict[str, Any],
    default_seconds: int = 5,
    max_seconds: int = 60,
) -> Dict[str, Any]:
    """Handle delay node execution.

    The worker never sleeps here: the requested wait is returned as
    ``deferSeconds`` and the orchestrator reschedules the node.

    Args:
        node_type: The node type (delay)
        input_data: Resolved node input
        default_seconds: Duration when the node sets none
        max_seconds: Upper bound on the wait

    Returns:
        Execution result dict
    """
    try:
        duration = int(float(input_data.get('duration', default_seconds)))
    except (TypeError, ValueError, OverflowError):
        duration = default_seconds
    defer = max(0, min(duration, max_seconds))
    logger.debug("[Delay] Deferring node", requested=duration, defer_seconds=defer)
    return {
        'success': True,
        'output': dict(input_data),
        'deferSeconds': defer,
    }


async def handle_condition(node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
    """Handle condition node execution.

    Operators: exists (default), empty, contains, equals. An unknown operator
    behaves like exists. The input is routed to the ``true`` or ``false``
    output and the boolean is exposed as ``result``.
    """
    value_in = input_data.get('input')
    operator = input_data.get('condition') or 'exists'
    expected = input_data.get('value', '')

    if operator not in CONDITION_OPERATORS:
        logger.debug("[Condition] Unknown operator, using exists", operator=operator)
        operator = 'exists'

    if operator == 'empty':
        matched = _is_empty(value_in)
    elif operator == 'contains':
        matched = isinstance(value_in, str) and str(expected if expected is not None else '') in value_in
    elif operator == 'equals':
        matched = _loose_equals(value_in, expected)
    else:
        matched = not _is_empty(value_in)

    return {
        'success': True,
        'output': {
            'true': value_in if matched else None,
            'false': value_in if not matched else None,
            'result': matched,
        },
    }


async def handle_passthrough(node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
    """Start/trigger/merge nodes forward their input unchanged."""
    return {
        'success': True,
        'output': dict(input_data),
    }
