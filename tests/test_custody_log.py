from collection.custody_log import GENESIS_HASH, canonical_payload, compute_event_hash, verify_chain


def build_chain(*entries) -> list[dict]:
    events, prev_hash = [], GENESIS_HASH
    for index, (event_type, payload) in enumerate(entries, start=1):
        payload_json = canonical_payload(payload)
        occurred_at = f"2026-10-19T08:0{index}:00+00:00"
        event_hash = compute_event_hash(prev_hash, event_type, occurred_at, payload_json)
        events.append({
            'id': index, 'event_type': event_type, 'occurred_at': occurred_at,
            'payload_json': payload_json, 'prev_hash': prev_hash, 'event_hash': event_hash,
        })
        prev_hash = event_hash
    return events


def test_canonical_payload_is_key_order_independent():
    assert canonical_payload({'b': 1, 'a': 'Ә'}) == canonical_payload({'a': 'Ә', 'b': 1}) == '{"a":"Ә","b":1}'


def test_empty_trail_is_valid():
    result = verify_chain([])
    assert result.valid and result.events_count == 0 and result.last_hash == GENESIS_HASH


def test_intact_chain_verifies():
    events = build_chain(
        ('session.started', {'containers': ['BIN-A']}),
        ('container.visited', {'containerRef': 'BIN-A'}),
        ('handoff.created', {'handoffId': 'HND-1'}),
    )

    result = verify_chain(events)

    assert result.valid
    assert result.events_count == 3
    assert result.last_hash == events[-1]['event_hash']


def test_edited_payload_breaks_chain_at_that_event():
    events = build_chain(
        ('session.started', {}),
        ('container.visited', {'collectedWeight': 3}),
        ('session.completed', {}),
    )
    events[1]['payload_json'] = canonical_payload({'collectedWeight': 30})

    result = verify_chain(events)

    assert not result.valid
    assert result.broken_at == 2


def test_deleted_event_breaks_chain():
    events = build_chain(('a', {}), ('b', {}), ('c', {}))
    del events[1]

    result = verify_chain(events)

    assert not result.valid
    assert result.broken_at == 3
