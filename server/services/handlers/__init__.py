"""Node handlers package.

- utility.py: Delay, Condition, pass-through flow nodes (start-flow,
  manual-trigger, flow-merge)
"""

from .utility import (
    handle_condition,
    handle_delay,
    handle_passthrough,
)

__all__ = [
    'handle_condition',
    'handle_delay',
    'handle_passthrough',
]
