"""
Hash-chained custody trail.

Each event row stores the hash of the previous event of the same session,
so rewriting or deleting a row in the middle breaks every hash after it.
"""
import hashlib
import json

from collection.models import TrailVerification

GENESIS_HASH = "0" * 64


def canonical_payload(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False, default=str)


def compute_event_hash(prev_hash: str, event_type: str, occurred_at: str, payload_json: str) -> str:
    material = "|".join((prev_hash, event_type, occurred_at, payload_json))
    return hashlib.sha256(material.encode()).hexdigest()


def verify_chain(events) -> TrailVerification:
    """
    Recomputes the chain over events ordered by id.
    Each event is a mapping with event_type, occurred_at, payload_json, prev_hash, event_hash.
    """
    prev_hash = GENESIS_HASH
    count = 0
    for event in events:
        count += 1
        expected = compute_event_hash(prev_hash, event['event_type'], event['occurred_at'], event['payload_json'])
        if event['prev_hash'] != prev_hash or event['event_hash'] != expected:
            return TrailVerification(valid=False, events_count=count, broken_at=event['id'], last_hash=prev_hash)
        prev_hash = event['event_hash']
    return TrailVerification(valid=True, events_count=count, last_hash=prev_hash)
