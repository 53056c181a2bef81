import logging

from curriculum_studio import consistency, store
from curriculum_studio.session import ProgramWorkspace, RequestTracker


def test_apply_swaps_state_on_success(state):
    workspace = ProgramWorkspace(state)

    outcome = workspace.apply(store.create_course, {"code": "CS500"})

    assert outcome.ok
    assert workspace.state is outcome.state
    assert workspace.state.course(outcome.created_id).code == "CS500"


def test_apply_wraps_plain_state_results(state):
    workspace = ProgramWorkspace(state)

    outcome = workspace.apply(store.delete_course, "c1")

    assert outcome.ok
    assert workspace.state.course("c1") is None


def test_apply_keeps_state_on_rejection(state, caplog):
    workspace = ProgramWorkspace(state)

    with caplog.at_level(logging.INFO, logger="curriculum_studio.session"):
        outcome = workspace.apply(consistency.delete_knowledge_area, "adv_eng")

    assert outcome.error.code == "ENTITY_IN_USE"
    assert workspace.state is state
    assert "ENTITY_IN_USE" in caplog.text


def test_tracker_tickets_are_per_key():
    tracker = RequestTracker()
    first = tracker.begin("translate:c1")
    other = tracker.begin("translate:c2")
    second = tracker.begin("translate:c1")

    assert not tracker.finish("translate:c1", first)
    assert tracker.finish("translate:c2", other)
    assert tracker.finish("translate:c1", second)
    assert not tracker.finish("translate:c1", second)


def test_late_result_of_an_older_request_is_discarded(state, caplog):
    workspace = ProgramWorkspace(state)
    older = workspace.begin("translate:c1")
    newer = workspace.begin("translate:c1")

    applied = workspace.commit("translate:c1", newer, store.update_course, "c1", {"description": {"vi": "mới", "en": "new"}})
    with caplog.at_level(logging.INFO, logger="curriculum_studio.session"):
        stale = workspace.commit("translate:c1", older, store.update_course, "c1", {"description": {"vi": "cũ", "en": "old"}})

    assert applied.ok
    assert stale is None
    assert workspace.state.course("c1").description.en == "new"
    assert "Discarding stale result" in caplog.text


def test_abandoned_request_blocks_nothing_newer(state):
    workspace = ProgramWorkspace(state)
    ticket = workspace.begin("import:c2")

    workspace.abandon("import:c2", ticket)
    later = workspace.begin("import:c2")

    assert workspace.commit("import:c2", later, store.update_course, "c2", {"credits": 5}).ok
    assert workspace.state.course("c2").credits == 5


def test_default_workspace_starts_from_seed():
    workspace = ProgramWorkspace()

    assert [k.id for k in workspace.state.knowledge_areas][:2] == ["math_sci", "fund_eng"]
    assert workspace.state.courses == []
