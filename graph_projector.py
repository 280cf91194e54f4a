"""Project monitor sessions/actions into a node/edge graph for rendering.

Positions are left to the rendering side; this module only decides which
nodes exist and how they connect.
"""

from monitor_protocol import ACTION_DELTA

ORIGIN_NODE_ID = 'origin'
DEFAULT_MAX_ACTIONS = 50


def session_node_id(key):
    return f'session-{key}'


def action_node_id(action_id):
    return f'action-{action_id}'


def seq_sort_key(action):
    seq = action.get('seq')
    return seq if isinstance(seq, (int, float)) else 0


def select_visible_actions(actions, selected_session_key=None, max_actions=DEFAULT_MAX_ACTIONS):
    """Pick the actions shown in the graph.

    With a selection: every action of that session, in table order.
    Without one: the most recent ``max_actions`` by timestamp, oldest first.
    """
    if selected_session_key:
        return [a for a in actions if a.get('session_key') == selected_session_key]
    by_time = sorted(actions, key=lambda a: a.get('timestamp') or 0)
    if max_actions is None or max_actions <= 0:
        return by_time
    return by_time[-max_actions:]


def build_action_graph(sessions, actions, selected_session_key=None, max_actions=DEFAULT_MAX_ACTIONS):
    """Build ``(nodes, edges)`` for the current store contents and selection."""
    visible_actions = select_visible_actions(actions, selected_session_key, max_actions)
    if selected_session_key:
        visible_sessions = [s for s in sessions if s.get('key') == selected_session_key]
    else:
        visible_sessions = list(sessions)

    nodes = [{
        'id': ORIGIN_NODE_ID,
        'type': 'origin',
        'data': {'active': bool(sessions) or bool(visible_actions)},
    }]
    edges = []

    for session in visible_sessions:
        nodes.append({
            'id': session_node_id(session['key']),
            'type': 'session',
            'data': dict(session),
        })
        edges.append({
            'id': f"e-origin-{session['key']}",
            'source': ORIGIN_NODE_ID,
            'target': session_node_id(session['key']),
            'animated': False,
        })

    for action in visible_actions:
        nodes.append({
            'id': action_node_id(action['id']),
            'type': 'action',
            'data': dict(action),
        })

    runs = {}
    for action in visible_actions:
        runs.setdefault(action.get('run_id'), []).append(action)

    session_node_ids = {session_node_id(s['key']) for s in visible_sessions}

    for run_id, run_actions in runs.items():
        ordered = sorted(run_actions, key=seq_sort_key)
        first = ordered[0]
        source_id = session_node_id(first.get('session_key'))
        if source_id in session_node_ids:
            edges.append({
                'id': f'e-session-{run_id}',
                'source': source_id,
                'target': action_node_id(first['id']),
                'animated': first.get('type') == ACTION_DELTA,
            })
        else:
            print(f"[GRAPH] session not found for action: {first.get('session_key')} "
                  f"available: {sorted(session_node_ids)}")

        for prev, curr in zip(ordered, ordered[1:]):
            edges.append({
                'id': f"e-{prev['id']}-{curr['id']}",
                'source': action_node_id(prev['id']),
                'target': action_node_id(curr['id']),
                'animated': curr.get('type') == ACTION_DELTA,
            })

    return nodes, edges
