"""
Property tests: random transition sequences never break lifecycle invariants.
"""

import os
import tempfile
from datetime import timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from fulfillment_engine.core.errors import InvalidTransition, NoEligibleAssignee
from fulfillment_engine.core.lifecycle import RequestLifecycle
from fulfillment_engine.storage.models import RequestStatus
from fulfillment_engine.storage.repository import initialize_schema

from conftest import ADMIN, ALICE, BOB, CLIENT, JAN_10, VINCE, make_config

S = RequestStatus
LEGAL_EDGES = {
    (S.PENDING, S.IN_PROGRESS),
    (S.PENDING, S.CANCELED),
    (S.IN_PROGRESS, S.DELIVERED),
    (S.IN_PROGRESS, S.CHANGE_REQUEST),
    (S.IN_PROGRESS, S.CANCELED),
    (S.CHANGE_REQUEST, S.IN_PROGRESS),
    (S.CHANGE_REQUEST, S.CANCELED),
}

OPERATIONS = st.sampled_from(["take", "assign", "deliver", "request_change", "resume", "cancel"])
ACTORS = st.sampled_from([ADMIN, ALICE, BOB, VINCE, CLIENT])


@settings(max_examples=40, deadline=None)
@given(steps=st.lists(st.tuples(OPERATIONS, ACTORS), max_size=12))
def test_random_sequences_preserve_invariants(steps):
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = os.path.join(temp_dir, "test.db")
        initialize_schema(db_path)
        engine = RequestLifecycle(make_config(), db_path=db_path)
        request_id = engine.create_request(CLIENT, "client-1", "design", now=JAN_10).request.id

        clock = JAN_10
        visited = [S.PENDING]
        for operation, actor in steps:
            clock += timedelta(hours=1)
            before = engine.get_request(request_id)
            try:
                getattr(engine, operation)(request_id, actor, now=clock)
            except (InvalidTransition, NoEligibleAssignee):
                assert engine.get_request(request_id) == before
                continue

            after = engine.get_request(request_id)
            assert (before.status, after.status) in LEGAL_EDGES
            assert after.version == before.version + 1
            assert (after.status == S.DELIVERED) == (after.delivered_at is not None)
            if after.status != S.PENDING:
                assert after.assignee_id is not None or after.status == S.CANCELED
            visited.append(after.status)

        final = engine.get_request(request_id)
        if final.status == S.DELIVERED:
            assert S.IN_PROGRESS in visited[:-1]
            assert visited.count(S.DELIVERED) == 1
        assert len(engine.ledger.list_entries()) == (1 if final.status == S.DELIVERED else 0)
