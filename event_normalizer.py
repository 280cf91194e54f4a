"""Translate raw runtime frames into monitor sessions and actions.

Everything here is pure: no store access, no I/O. Frames that do not match a
known shape yield None so the caller can drop them silently.
"""

import math
import time

from monitor_protocol import (
    ACTION_DELTA,
    ACTION_TOOL_CALL,
    ACTION_TOOL_RESULT,
    CHAT_STATES,
    EVENT_TYPE_AGENT,
    EVENT_TYPE_CHAT,
    SESSION_STATUS_ACTIVE,
    SESSION_STATUS_IDLE,
    SESSION_STATUS_THINKING,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    parse_content_blocks,
    parse_session_key,
)

SNAPSHOT_EXTRA_FIELDS = {
    'label': 'label',
    'displayName': 'display_name',
    'model': 'model',
    'totalTokens': 'total_tokens',
}


def now_ms():
    """Return current wall clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def coerce_seq(value):
    """Coerce a frame sequence number to int, falling back to 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def finite_number(value):
    """Return value when it is a finite int/float (not bool), else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def text_or_none(value):
    """Return value when it is a non-empty string, else None."""
    return value if isinstance(value, str) and value else None


def new_action(run_id, seq, action_type, event_type, session_key=None, timestamp=None):
    """Build an action record with every optional field present."""
    return {
        'id': f'{run_id}-{seq}',
        'run_id': run_id,
        'session_key': session_key,
        'seq': seq,
        'type': action_type,
        'event_type': event_type,
        'content': None,
        'tool_name': None,
        'tool_args': None,
        'timestamp': timestamp if timestamp is not None else now_ms(),
    }


def session_info_to_monitor(info):
    """Convert one session snapshot row into a full session record.

    Returns None when the row has no parseable key.
    """
    if not isinstance(info, dict):
        return None
    key = info.get('key')
    parsed = parse_session_key(key)
    if parsed is None:
        return None

    last_activity = finite_number(info.get('lastActivityAt', info.get('updatedAt')))
    if last_activity is None:
        last_activity = 0

    session = {
        'key': key,
        'agent_id': parsed['agent_id'],
        'platform': parsed['platform'],
        'recipient': parsed['recipient'],
        'is_group': parsed['is_group'],
        'status': SESSION_STATUS_IDLE,
        'last_activity_at': int(last_activity),
    }
    for wire_name, field in SNAPSHOT_EXTRA_FIELDS.items():
        if info.get(wire_name) is not None:
            session[field] = info[wire_name]
    return session


def apply_message_content(action, message):
    """Fill content (and possibly tool fields/type) from a chat message payload."""
    if isinstance(message, str):
        action['content'] = message
        return
    if not isinstance(message, dict):
        return

    content = message.get('content')
    if isinstance(content, list):
        texts = []
        for block in parse_content_blocks(content):
            if isinstance(block, TextBlock):
                texts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                action['type'] = ACTION_TOOL_CALL
                action['tool_name'] = block.name
                action['tool_args'] = block.input
            elif isinstance(block, ToolResultBlock):
                action['type'] = ACTION_TOOL_RESULT
                if block.content:
                    texts.append(block.content)
        if texts:
            action['content'] = ''.join(texts)
    elif isinstance(content, str):
        action['content'] = content
    elif isinstance(message.get('text'), str):
        action['content'] = message['text']


def chat_event_to_action(event):
    """Build an action from a chat event payload."""
    seq = coerce_seq(event.get('seq'))
    action = new_action(
        event['runId'],
        seq,
        event.get('state'),
        EVENT_TYPE_CHAT,
        session_key=text_or_none(event.get('sessionKey')),
    )
    if event.get('message'):
        apply_message_content(action, event['message'])
    if event.get('errorMessage'):
        action['content'] = str(event['errorMessage'])
    return action


def agent_event_to_action(event):
    """Build an action from an agent-internal event payload.

    Data types other than tool_use/tool_result/text become contentless deltas,
    which is how lifecycle pings open a run before any text arrives.
    """
    data = event.get('data') if isinstance(event.get('data'), dict) else {}
    data_type = data.get('type')

    timestamp = finite_number(event.get('ts'))

    action = new_action(
        event['runId'],
        coerce_seq(event.get('seq')),
        ACTION_DELTA,
        EVENT_TYPE_AGENT,
        session_key=text_or_none(event.get('stream')),
        timestamp=timestamp,
    )
    if data_type == 'tool_use':
        tool_name = str(data.get('name') or 'unknown')
        action['type'] = ACTION_TOOL_CALL
        action['tool_name'] = tool_name
        action['tool_args'] = data.get('input')
        action['content'] = f'Tool: {tool_name}'
    elif data_type == 'tool_result':
        action['type'] = ACTION_TOOL_RESULT
        action['content'] = str(data.get('content') or '')
    elif data_type == 'text':
        action['content'] = str(data.get('text') or '')
    return action


def parse_event_frame(frame):
    """Normalize one transport frame.

    Returns ``{'session': patch, 'action': action}`` for chat frames,
    ``{'action': action}`` for agent frames, and None for anything else.
    """
    if not isinstance(frame, dict):
        return None
    payload = frame.get('payload')
    if not isinstance(payload, dict):
        return None
    run_id = payload.get('runId')
    if isinstance(run_id, bool) or not isinstance(run_id, (str, int)) or run_id == '':
        return None
    payload = dict(payload, runId=str(run_id))

    event_name = frame.get('event')
    if event_name == EVENT_TYPE_CHAT:
        state = payload.get('state')
        if not isinstance(state, str) or state not in CHAT_STATES:
            return None
        result = {'action': chat_event_to_action(payload)}
        session_key = text_or_none(payload.get('sessionKey'))
        if session_key:
            result['session'] = {
                'key': session_key,
                'status': SESSION_STATUS_THINKING if state == ACTION_DELTA else SESSION_STATUS_ACTIVE,
                'last_activity_at': now_ms(),
            }
        return result

    if event_name == EVENT_TYPE_AGENT:
        return {'action': agent_event_to_action(payload)}

    return None
