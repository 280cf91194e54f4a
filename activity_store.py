"""In-memory session/action tables for the activity monitor.

The store is the single serialization point for every mutation: socket
handlers, HTTP handlers and background readers all go through its lock.

Deltas for one run are folded into a single streaming record keyed
``<run_id>-stream``; a later final/error/aborted event for that run flips the
same record's type instead of adding a new one. Tool calls, tool results and
terminal events without a stream are stored under their natural id and are
never overwritten by a re-delivery.
"""

import threading

from monitor_protocol import (
    ACTION_DELTA,
    TERMINAL_ACTION_TYPES,
    is_resolved_session_key,
)
from event_normalizer import now_ms


def streaming_id(run_id):
    """Return the id of the aggregated streaming record for a run."""
    return f'{run_id}-stream'


def merge_session_fields(current, patch):
    """Shallow-merge a session patch; last_activity_at never moves backwards."""
    merged = current.copy()
    merged.update(patch)
    previous_ts = current.get('last_activity_at')
    incoming_ts = patch.get('last_activity_at')
    if isinstance(previous_ts, (int, float)) and isinstance(incoming_ts, (int, float)):
        merged['last_activity_at'] = max(previous_ts, incoming_ts)
    return merged


class ActivityStore:
    """Key-addressed session and action tables with streaming aggregation."""

    def __init__(self, reorder_deltas=False):
        self.reorder_deltas = reorder_deltas
        self._lock = threading.RLock()
        self._sessions = {}
        self._actions = {}
        self._run_sessions = {}
        self._fragments = {}
        self._arrivals = 0

    def upsert_session(self, session):
        """Insert a session or shallow-merge it into the existing one."""
        key = session.get('key') if isinstance(session, dict) else None
        if not key:
            return None
        with self._lock:
            existing = self._sessions.get(key)
            if existing is None:
                self._sessions[key] = dict(session)
            else:
                self._sessions[key] = merge_session_fields(existing, session)
            return dict(self._sessions[key])

    def update_session(self, key, patch):
        """Merge fields into a known session; unknown keys are ignored."""
        with self._lock:
            existing = self._sessions.get(key)
            if existing is None:
                return None
            patch = {k: v for k, v in patch.items() if k != 'key'}
            self._sessions[key] = merge_session_fields(existing, patch)
            return dict(self._sessions[key])

    def update_session_status(self, key, status):
        """Set a known session's status and refresh its activity timestamp."""
        return self.update_session(key, {'status': status, 'last_activity_at': now_ms()})

    def add_action(self, action):
        """Fold one normalized action into the table.

        Returns a copy of the record that was inserted or mutated, or None when
        the call was an idempotent re-delivery.
        """
        run_id = action.get('run_id')
        incoming_key = action.get('session_key')

        with self._lock:
            if is_resolved_session_key(incoming_key):
                self._run_sessions[run_id] = incoming_key

            session_key = incoming_key
            if not is_resolved_session_key(session_key):
                session_key = self._run_sessions.get(run_id, session_key)

            action_type = action.get('type')
            stream_id = streaming_id(run_id)

            if action_type == ACTION_DELTA:
                record = self._actions.get(stream_id)
                if record is not None:
                    record['content'] = self._stream_content(record, action)
                    record['seq'] = action.get('seq')
                    record['timestamp'] = action.get('timestamp')
                    if is_resolved_session_key(session_key):
                        record['session_key'] = session_key
                else:
                    record = dict(action)
                    record['id'] = stream_id
                    record['session_key'] = session_key
                    self._fragments.pop(run_id, None)
                    record['content'] = self._stream_content(None, action)
                    self._actions[stream_id] = record
                return dict(record)

            if action_type in TERMINAL_ACTION_TYPES:
                record = self._actions.get(stream_id)
                if record is not None:
                    record['type'] = action_type
                    self._fragments.pop(run_id, None)
                    record['seq'] = action.get('seq')
                    record['timestamp'] = action.get('timestamp')
                    if is_resolved_session_key(session_key):
                        record['session_key'] = session_key
                    return dict(record)

            action_id = action.get('id')
            if action_id in self._actions:
                return None
            record = dict(action)
            record['session_key'] = session_key
            self._actions[action_id] = record
            return dict(record)

    def _stream_content(self, record, action):
        fragment = action.get('content') or ''
        if not self.reorder_deltas:
            previous = (record.get('content') or '') if record is not None else ''
            return previous + fragment

        self._arrivals += 1
        fragments = self._fragments.setdefault(action.get('run_id'), [])
        fragments.append((action.get('seq') or 0, self._arrivals, fragment))
        fragments.sort(key=lambda item: (item[0], item[1]))
        return ''.join(item[2] for item in fragments)

    def clear(self, forget_runs=False):
        """Empty both tables. The run→session cache survives unless asked."""
        with self._lock:
            self._sessions.clear()
            self._actions.clear()
            self._fragments.clear()
            if forget_runs:
                self._run_sessions.clear()

    def sessions(self):
        """Return copies of all sessions in table order."""
        with self._lock:
            return [dict(s) for s in self._sessions.values()]

    def actions(self):
        """Return copies of all actions in table order."""
        with self._lock:
            return [dict(a) for a in self._actions.values()]

    def snapshot(self):
        """Return sessions and actions copied under one lock acquisition."""
        with self._lock:
            return self.sessions(), self.actions()

    def get_session(self, key):
        with self._lock:
            session = self._sessions.get(key)
            return dict(session) if session is not None else None

    def get_action(self, action_id):
        with self._lock:
            action = self._actions.get(action_id)
            return dict(action) if action is not None else None

    def session_key_for_run(self, run_id):
        with self._lock:
            return self._run_sessions.get(run_id)

    def counts(self):
        with self._lock:
            return {
                'sessions': len(self._sessions),
                'actions': len(self._actions),
                'runs': len(self._run_sessions),
            }
