"""OpenClaw activity monitor backend.

This module is the composition root of the live activity monitor. It owns one
ActivityStore, feeds it from the runtime transport (Socket.IO frames, HTTP
frame posts, a tailed JSONL frame file) and from a periodic session snapshot
poll, and exposes session/action lists plus the projected action graph over
HTTP and Socket.IO.
"""

from flask import Flask, request
from flask_socketio import SocketIO
import threading
import time
import json
import os
import shutil
import subprocess

from activity_store import ActivityStore
from event_normalizer import parse_event_frame, session_info_to_monitor
from graph_projector import DEFAULT_MAX_ACTIONS, build_action_graph
from monitor_protocol import parse_session_key

app = Flask(__name__)
socketio = SocketIO(app, cors_allowed_origins="*")

# Runtime frame stream and diagnostics paths.
FRAMES_PATH = os.path.expanduser(
    os.environ.get('AGENT_DASHBOARD_FRAMES_PATH', '~/.openclaw/shared/events/frames.jsonl')
)
INVALID_DIR = os.path.expanduser(
    os.environ.get('AGENT_DASHBOARD_INVALID_DIR', '~/.openclaw/shared/events/invalid')
)

MONITOR_MODE = os.environ.get('AGENT_DASHBOARD_MODE', 'auto').strip().lower()
POLL_INTERVAL_SEC = float(os.environ.get('AGENT_DASHBOARD_POLL_SEC', '5'))
HISTORICAL_MODE = os.environ.get('AGENT_DASHBOARD_HISTORICAL') == '1'
REORDER_DELTAS = os.environ.get('AGENT_DASHBOARD_REORDER_DELTAS') == '1'
VERBOSE = os.environ.get('AGENT_DASHBOARD_VERBOSE') == '1'
try:
    GRAPH_MAX_ACTIONS = int(os.environ.get('AGENT_DASHBOARD_GRAPH_MAX_ACTIONS', str(DEFAULT_MAX_ACTIONS)))
except Exception:
    GRAPH_MAX_ACTIONS = DEFAULT_MAX_ACTIONS
GRAPH_MAX_ACTIONS = max(1, min(GRAPH_MAX_ACTIONS, 500))

LIVE_WINDOW_MINUTES = 60
HISTORICAL_WINDOW_MINUTES = 1440

# The one store instance for this process; every mutation goes through it.
store = ActivityStore(reorder_deltas=REORDER_DELTAS)

# Readiness flag: True once a snapshot poll or the frame replay has completed.
MONITOR_READY = False
bootstrap_lock = threading.Lock()
session_poll_started = False
frame_reader_started = False
stats_lock = threading.Lock()
ingest_stats = {
    'accepted': 0,
    'ignored': 0,
    'last_frame_at': None,
}
CAPABILITIES = {
    'provider': 'openclaw-cli',
    'openclaw_cli': False,
    'channels': {
        'session_poll': False,
        'frame_file': False,
        'socket_frames': True,
    },
    'graph': {
        'max_actions': GRAPH_MAX_ACTIONS,
    },
    'reorder_deltas': REORDER_DELTAS,
    'mode': MONITOR_MODE,
}


def utc_now_iso():
    """Return current UTC time as ISO-8601 string."""
    return time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())


def ingest_stats_copy():
    with stats_lock:
        return dict(ingest_stats)


def resolve_store(activity_store):
    return activity_store if activity_store is not None else store


def ingest_frame(frame, activity_store=None):
    """Normalize one transport frame and fold it into the store.

    Returns a summary of what changed, or None when the frame was ignored.
    Sessions are only created from a chat frame when the key parses; existing
    sessions just get their status/activity refreshed.
    """
    target = resolve_store(activity_store)
    parsed = parse_event_frame(frame)
    if parsed is None:
        with stats_lock:
            ingest_stats['ignored'] += 1
        if VERBOSE:
            print(f'[FRAMES] Ignored frame: {frame}')
        return None

    with stats_lock:
        ingest_stats['accepted'] += 1
        ingest_stats['last_frame_at'] = utc_now_iso()

    session = None
    patch = parsed.get('session')
    if patch:
        key = patch['key']
        session = target.update_session(key, patch)
        if session is None:
            parts = parse_session_key(key)
            if parts is not None:
                session = target.upsert_session({'key': key, **parts, **patch})
            elif VERBOSE:
                print(f'[FRAMES] Not creating session for unparseable key: {key}')

    action = None
    if parsed.get('action'):
        action = target.add_action(parsed['action'])

    if session is not None:
        socketio.emit('session', session)
    if action is not None:
        socketio.emit('action', action)

    return {'session': session, 'action': action}


def apply_session_snapshot(rows, activity_store=None):
    """Merge a session listing into the store and push changed sessions.

    A snapshot never downgrades the live status of a session that frames have
    already marked thinking/active.
    """
    global MONITOR_READY
    target = resolve_store(activity_store)
    if isinstance(rows, dict):
        rows = rows.get('sessions')
    if not isinstance(rows, list):
        return []

    changed = []
    for row in rows:
        session = session_info_to_monitor(row)
        if session is None:
            continue
        previous = target.get_session(session['key'])
        if previous is not None:
            session.pop('status', None)
        merged = target.upsert_session(session)
        if merged != previous:
            changed.append(merged)

    for payload in changed:
        socketio.emit('session', payload)
    if activity_store is None and not MONITOR_READY:
        MONITOR_READY = True
    return changed


def clear_monitor(activity_store=None):
    """Drop every session and action, as on transport disconnect."""
    resolve_store(activity_store).clear()
    socketio.emit('cleared', {'at': utc_now_iso()})


@app.route('/ready')
def ready():
    """Return lightweight readiness status for frontend bootstrap retries."""
    return {'ready': bool(MONITOR_READY)}


@app.route('/capabilities')
def capabilities():
    """Expose runtime capabilities, ingest stats and table sizes."""
    return {
        'mode': MONITOR_MODE,
        'ready': bool(MONITOR_READY),
        'tracked': store.counts(),
        'ingest': ingest_stats_copy(),
        'capabilities': CAPABILITIES,
    }


@app.route('/sessions', methods=['GET'])
def list_sessions():
    """Return all sessions, optionally filtered by status/platform/agent."""
    sessions = store.sessions()
    status = request.args.get('status')
    platform = request.args.get('platform')
    agent = request.args.get('agent')
    if status:
        sessions = [s for s in sessions if s.get('status') == status]
    if platform:
        sessions = [s for s in sessions if s.get('platform') == platform.lower()]
    if agent:
        sessions = [s for s in sessions if s.get('agent_id') == agent]
    sessions.sort(key=lambda s: s.get('last_activity_at') or 0, reverse=True)
    return {'sessions': sessions, 'count': len(sessions)}


@app.route('/actions', methods=['GET'])
def list_actions():
    """Return actions in table order, optionally filtered and tail-limited."""
    actions = store.actions()
    session_key = request.args.get('session')
    run_id = request.args.get('run')
    action_type = request.args.get('type')
    limit = request.args.get('limit', type=int)
    if session_key:
        actions = [a for a in actions if a.get('session_key') == session_key]
    if run_id:
        actions = [a for a in actions if a.get('run_id') == run_id]
    if action_type:
        actions = [a for a in actions if a.get('type') == action_type]
    if limit is not None and limit > 0:
        actions = actions[-limit:]
    return {'actions': actions, 'count': len(actions)}


@app.route('/graph', methods=['GET'])
def graph():
    """Return the projected node/edge graph for the requested selection."""
    selected = request.args.get('session') or None
    max_actions = request.args.get('max_actions', type=int)
    if max_actions is None:
        max_actions = GRAPH_MAX_ACTIONS
    max_actions = max(1, min(max_actions, 500))
    sessions, actions = store.snapshot()
    nodes, edges = build_action_graph(sessions, actions, selected, max_actions=max_actions)
    return {
        'selected_session': selected,
        'generated_at': utc_now_iso(),
        'nodes': nodes,
        'edges': edges,
    }


@app.route('/frames', methods=['POST'])
def post_frames():
    """Ingest one frame or a list of frames posted by a transport bridge."""
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        frames = [body]
    elif isinstance(body, list):
        frames = body
    else:
        return {'error': 'expected a JSON frame object or list of frames'}, 400

    accepted = 0
    for frame in frames:
        if ingest_frame(frame) is not None:
            accepted += 1
    return {'accepted': accepted, 'ignored': len(frames) - accepted}


@app.route('/sessions/snapshot', methods=['POST'])
def post_session_snapshot():
    """Merge a pushed session listing, same as one poll cycle."""
    body = request.get_json(silent=True)
    if not isinstance(body, (dict, list)):
        return {'error': 'expected a session list or {"sessions": [...]}'}, 400
    changed = apply_session_snapshot(body)
    return {'changed': len(changed), 'tracked': store.counts()}


@app.route('/disconnect', methods=['POST'])
def disconnect():
    """Clear the timeline, mirroring a transport disconnect."""
    clear_monitor()
    return {'cleared': True, 'tracked': store.counts()}


def run_openclaw_json(args):  # pragma: no cover
    """Execute OpenClaw CLI command and parse JSON output safely."""
    if shutil.which('openclaw') is None:
        return None
    try:
        cmd = ['openclaw'] + args + ['--json']
        res = subprocess.run(cmd, capture_output=True, text=True, timeout=8)
        if res.returncode != 0:
            return None
        payload = (res.stdout or '').strip()
        if not payload:
            return None
        return json.loads(payload)
    except Exception:
        return None


def session_window_minutes():
    """Activity window for the session listing (wider in historical mode)."""
    return HISTORICAL_WINDOW_MINUTES if HISTORICAL_MODE else LIVE_WINDOW_MINUTES


def fetch_session_snapshot():
    """Ask the OpenClaw CLI for recently active sessions."""
    payload = run_openclaw_json(['sessions', '--active', str(session_window_minutes())])
    CAPABILITIES['openclaw_cli'] = bool(shutil.which('openclaw'))
    CAPABILITIES['channels']['session_poll'] = isinstance(payload, (list, dict))
    return payload


def session_poll_loop():  # pragma: no cover
    """Background poll that re-fetches and merges the session listing."""
    print(f'[POLL] Session poll started (every {POLL_INTERVAL_SEC}s, window {session_window_minutes()}m)')
    while True:
        try:
            payload = fetch_session_snapshot()
            if payload is not None:
                changed = apply_session_snapshot(payload)
                if VERBOSE:
                    print(f'[POLL] Upserted snapshot, {len(changed)} sessions changed')
        except Exception as e:
            print(f'[POLL] Session poll error: {e}')
        time.sleep(max(1.0, POLL_INTERVAL_SEC))


def archive_invalid_line(line):
    """Persist malformed frame lines for offline diagnostics."""
    try:
        os.makedirs(INVALID_DIR, exist_ok=True)
        ts = int(time.time())
        path = os.path.join(INVALID_DIR, f'invalid.{ts}.log')
        with open(path, 'a', encoding='utf-8') as af:
            af.write(line + '\n')
        print(f'[FRAMES] Archived invalid line to {path}')
    except Exception as e:
        print(f'[FRAMES] Failed to archive invalid line: {e}')


def ingest_frame_line(line, activity_store=None):
    """Decode and ingest one JSONL frame line; undecodable lines are archived."""
    line = line.strip()
    if not line:
        return None
    try:
        frame = json.loads(line)
    except Exception as e:
        print(f'[FRAMES] Failed to parse line: {line} -> {e}')
        archive_invalid_line(line)
        return None
    try:
        return ingest_frame(frame, activity_store)
    except Exception as e:
        print(f'[FRAMES] Failed to ingest frame: {e}')
        return None


def tail_frames(path):  # pragma: no cover
    """Replay a JSONL frame file into the store, then follow it for new frames."""
    global MONITOR_READY
    print(f'[FRAMES] Starting tail on {path} (pid={os.getpid()})')
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
    except Exception:
        pass
    if not os.path.exists(path):
        open(path, 'a').close()
    CAPABILITIES['channels']['frame_file'] = True

    with open(path, 'r', encoding='utf-8') as f:
        replayed = 0
        for line in f:
            if ingest_frame_line(line) is not None:
                replayed += 1
        print(f'[FRAMES] Replayed {replayed} frames, tracking {store.counts()}')
        sessions, actions = store.snapshot()
        socketio.emit('init', {'sessions': sessions, 'actions': actions})
        MONITOR_READY = True

        # The handle is already at EOF after replay.
        while True:
            line = f.readline()
            if not line:
                time.sleep(0.5)
                continue
            ingest_frame_line(line)


def start_background_workers():  # pragma: no cover
    """Start the session poll and frame reader threads according to mode."""
    global session_poll_started, frame_reader_started

    if MONITOR_MODE not in {'auto', 'poll-only', 'frames-only'}:
        print(f'[BOOT] Unknown AGENT_DASHBOARD_MODE={MONITOR_MODE}, fallback to auto behavior')

    if MONITOR_MODE != 'frames-only' and not session_poll_started:
        session_poll_started = True
        threading.Thread(target=session_poll_loop, daemon=True).start()

    if MONITOR_MODE == 'poll-only':
        return

    if frame_reader_started:
        return
    frame_reader_started = True
    print(f'[BOOT] Starting frame reader on {FRAMES_PATH}')
    threading.Thread(target=tail_frames, args=(FRAMES_PATH,), daemon=True).start()


def ensure_workers_started():  # pragma: no cover
    """Thread-safe bootstrap for background readers/monitors."""
    if app.testing or os.environ.get('AGENT_DASHBOARD_DISABLE_INTERNAL_READER') == '1':
        return
    with bootstrap_lock:
        start_background_workers()


@app.before_request
def bootstrap_before_request():  # pragma: no cover
    """Ensure background readers are started before handling requests."""
    ensure_workers_started()


@socketio.on('connect')
def handle_connect():  # pragma: no cover
    """Push the full current timeline to a newly connected client."""
    print("Client connected")
    ensure_workers_started()
    sessions, actions = store.snapshot()
    socketio.emit('init', {'sessions': sessions, 'actions': actions}, room=request.sid)


@socketio.on('frame')
def handle_frame(frame):  # pragma: no cover
    """Ingest a frame pushed by a runtime bridge over the socket."""
    ingest_frame(frame)


@socketio.on('graph_request')
def handle_graph_request(data=None):  # pragma: no cover
    """Answer a client's graph request for its current session selection."""
    selected = None
    if isinstance(data, dict):
        selected = data.get('session') or None
    sessions, actions = store.snapshot()
    nodes, edges = build_action_graph(sessions, actions, selected, max_actions=GRAPH_MAX_ACTIONS)
    socketio.emit('graph', {'selected_session': selected, 'nodes': nodes, 'edges': edges}, room=request.sid)


@socketio.on('disconnect')
def handle_disconnect():  # pragma: no cover
    """Log websocket disconnect events."""
    print("Client disconnected")


if __name__ == '__main__':  # pragma: no cover
    if os.environ.get('AGENT_DASHBOARD_DISABLE_INTERNAL_READER') != '1':
        start_background_workers()
    else:
        print('[BOOT] Internal readers disabled by AGENT_DASHBOARD_DISABLE_INTERNAL_READER=1')
    socketio.run(app, host='0.0.0.0', port=5050, debug=True, allow_unsafe_werkzeug=True)
