import copy

from graph_projector import ORIGIN_NODE_ID, build_action_graph, select_visible_actions


def session(key, **extra):
    row = {'key': key, 'agent_id': 'main', 'platform': 'telegram', 'recipient': key,
           'is_group': False, 'status': 'active', 'last_activity_at': 1}
    row.update(extra)
    return row


def action(action_id, run_id, seq, action_type, session_key, timestamp=None):
    return {
        'id': action_id,
        'run_id': run_id,
        'session_key': session_key,
        'seq': seq,
        'type': action_type,
        'event_type': 'chat',
        'content': None,
        'tool_name': None,
        'tool_args': None,
        'timestamp': timestamp if timestamp is not None else seq,
    }


def edge_pairs(edges):
    return {(e['source'], e['target']) for e in edges}


def test_empty_store_yields_single_inactive_origin():
    nodes, edges = build_action_graph([], [])
    assert nodes == [{'id': ORIGIN_NODE_ID, 'type': 'origin', 'data': {'active': False}}]
    assert edges == []


def test_origin_is_active_with_sessions_only():
    nodes, _ = build_action_graph([session('A')], [])
    assert nodes[0]['data']['active'] is True


def test_full_graph_links_origin_sessions_and_runs():
    sessions = [session('A'), session('B')]
    actions = [
        action('r1-stream', 'r1', 4, 'delta', 'A'),
        action('r1-2', 'r1', 2, 'tool_call', 'A'),
        action('r1-3', 'r1', 3, 'tool_result', 'A'),
        action('r2-1', 'r2', 1, 'final', 'B'),
    ]

    nodes, edges = build_action_graph(sessions, actions)

    ids = [n['id'] for n in nodes]
    assert ids[0] == 'origin'
    assert 'session-A' in ids and 'session-B' in ids
    assert {'action-r1-stream', 'action-r1-2', 'action-r1-3', 'action-r2-1'} <= set(ids)

    pairs = edge_pairs(edges)
    assert ('origin', 'session-A') in pairs
    assert ('origin', 'session-B') in pairs
    assert ('session-A', 'action-r1-2') in pairs
    assert ('action-r1-2', 'action-r1-3') in pairs
    assert ('action-r1-3', 'action-r1-stream') in pairs
    assert ('session-B', 'action-r2-1') in pairs
    assert len(edges) == 6


def test_chain_edges_are_animated_when_later_action_is_delta():
    actions = [
        action('r1-1', 'r1', 1, 'tool_call', 'A'),
        action('r1-stream', 'r1', 2, 'delta', 'A'),
        action('r1-3', 'r1', 3, 'tool_result', 'A'),
    ]
    _, edges = build_action_graph([session('A')], actions)
    by_pair = {(e['source'], e['target']): e for e in edges}
    assert by_pair[('action-r1-1', 'action-r1-stream')]['animated'] is True
    assert by_pair[('action-r1-stream', 'action-r1-3')]['animated'] is False
    assert by_pair[('origin', 'session-A')]['animated'] is False


def test_selection_limits_sessions_and_actions():
    sessions = [session('A'), session('B')]
    actions = [
        action('r1-1', 'r1', 1, 'tool_call', 'B'),
        action('r1-2', 'r1', 2, 'tool_result', 'A'),
        action('r2-1', 'r2', 1, 'tool_call', 'B'),
    ]

    nodes, edges = build_action_graph(sessions, actions, selected_session_key='A')

    ids = {n['id'] for n in nodes}
    assert ids == {'origin', 'session-A', 'action-r1-2'}
    pairs = edge_pairs(edges)
    assert not any(source == 'session-B' for source, _ in pairs)
    assert ('session-A', 'action-r1-2') in pairs
    assert nodes[0]['data']['active'] is True


def test_missing_session_node_skips_edge_but_keeps_action(capsys):
    actions = [
        action('r1-1', 'r1', 1, 'tool_call', 'ghost'),
        action('r1-2', 'r1', 2, 'tool_result', 'ghost'),
    ]

    nodes, edges = build_action_graph([session('A')], actions)

    assert 'action-r1-1' in {n['id'] for n in nodes}
    pairs = edge_pairs(edges)
    assert not any(target == 'action-r1-1' for _, target in pairs)
    assert ('action-r1-1', 'action-r1-2') in pairs
    assert '[GRAPH] session not found for action: ghost' in capsys.readouterr().out


def test_selected_session_absent_from_table_skips_session_edge(capsys):
    actions = [action('r1-1', 'r1', 1, 'tool_call', 'A')]
    nodes, edges = build_action_graph([session('B')], actions, selected_session_key='A')
    assert [n['id'] for n in nodes] == ['origin', 'action-r1-1']
    assert edges == []
    assert '[GRAPH]' in capsys.readouterr().out


def test_unselected_view_keeps_most_recent_actions_by_timestamp():
    actions = [action(f'r{i}-1', f'r{i}', 1, 'tool_call', 'A', timestamp=(i * 37) % 60) for i in range(60)]

    visible = select_visible_actions(actions)

    assert len(visible) == 50
    stamps = [a['timestamp'] for a in visible]
    assert stamps == sorted(stamps)
    assert min(stamps) == 10


def test_max_actions_is_configurable():
    actions = [action(f'r{i}-1', f'r{i}', 1, 'tool_call', 'A', timestamp=i) for i in range(10)]
    nodes, _ = build_action_graph([session('A')], actions, max_actions=3)
    assert [n['id'] for n in nodes if n['type'] == 'action'] == ['action-r7-1', 'action-r8-1', 'action-r9-1']


def test_projection_is_pure_and_repeatable():
    sessions = [session('A')]
    actions = [
        action('r1-2', 'r1', 2, 'tool_result', 'A'),
        action('r1-1', 'r1', 1, 'tool_call', 'A'),
    ]
    before = copy.deepcopy((sessions, actions))

    first = build_action_graph(sessions, actions)
    first[0][1]['data']['status'] = 'mutated'
    second = build_action_graph(sessions, actions)

    assert (sessions, actions) == before
    assert second[1] == first[1]
    assert second[0][1]['data']['status'] == 'active'
