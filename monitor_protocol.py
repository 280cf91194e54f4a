"""Wire vocabulary shared by the activity monitor.

Holds the status/type constants, the session-key grammar, and the tagged
content-block union that structured chat messages are resolved into before
any business logic sees them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

SESSION_STATUS_IDLE = 'idle'
SESSION_STATUS_THINKING = 'thinking'
SESSION_STATUS_ACTIVE = 'active'

ACTION_DELTA = 'delta'
ACTION_TOOL_CALL = 'tool_call'
ACTION_TOOL_RESULT = 'tool_result'
ACTION_FINAL = 'final'
ACTION_ERROR = 'error'
ACTION_ABORTED = 'aborted'
TERMINAL_ACTION_TYPES = {ACTION_FINAL, ACTION_ERROR, ACTION_ABORTED}
CHAT_STATES = {ACTION_DELTA} | TERMINAL_ACTION_TYPES

EVENT_TYPE_CHAT = 'chat'
EVENT_TYPE_AGENT = 'agent'

# Placeholder key the runtime uses before it knows which conversation a run belongs to.
LIFECYCLE_SESSION_KEY = 'lifecycle'

DEFAULT_AGENT_ID = 'main'
DIRECT_KINDS = {'dm', 'direct'}
GROUP_KINDS = {'group', 'channel', 'thread'}


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Any = None


@dataclass(frozen=True)
class ToolResultBlock:
    content: str


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def is_resolved_session_key(key: Any) -> bool:
    """Return True for a concrete session key (not empty, not the sentinel)."""
    return isinstance(key, str) and bool(key) and key != LIFECYCLE_SESSION_KEY


def parse_session_key(key: Any) -> dict | None:
    """Decompose a session key into agent/platform/recipient/group parts.

    Accepted shape is ``[agent:<agent_id>:]<platform>:[<kind>:]<recipient>``.
    The recipient keeps any remaining colons (``telegram:group:-100:topic:3``).
    Returns None when the key is not well formed.
    """
    if not is_resolved_session_key(key):
        return None
    parts = key.strip().split(':')

    agent_id = DEFAULT_AGENT_ID
    if parts[0].lower() == 'agent':
        if len(parts) < 2 or not parts[1]:
            return None
        agent_id = parts[1]
        parts = parts[2:]

    if len(parts) < 2 or not parts[0]:
        return None
    platform = parts[0].lower()
    rest = parts[1:]

    is_group = False
    kind = rest[0].lower()
    if len(rest) > 1 and (kind in DIRECT_KINDS or kind in GROUP_KINDS):
        is_group = kind in GROUP_KINDS
        rest = rest[1:]

    recipient = ':'.join(rest)
    if not recipient:
        return None

    return {
        'agent_id': agent_id,
        'platform': platform,
        'recipient': recipient,
        'is_group': is_group,
    }


def _block_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ''.join(
            item.get('text') for item in value
            if isinstance(item, dict) and item.get('type') == 'text' and isinstance(item.get('text'), str)
        )
    return ''


def parse_content_blocks(raw: Any) -> list[ContentBlock]:
    """Resolve a structured message content list into typed blocks.

    Blocks that are not dicts, or whose type is not text/tool_use/tool_result,
    are dropped. Text blocks without a string ``text`` are dropped too.
    """
    if not isinstance(raw, list):
        return []

    blocks: list[ContentBlock] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        block_type = item.get('type')
        if block_type == 'text':
            if isinstance(item.get('text'), str):
                blocks.append(TextBlock(text=item['text']))
        elif block_type == 'tool_use':
            blocks.append(ToolUseBlock(name=str(item.get('name') or 'unknown'), input=item.get('input')))
        elif block_type == 'tool_result':
            blocks.append(ToolResultBlock(content=_block_text(item.get('content'))))
    return blocks
