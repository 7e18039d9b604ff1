import pytest

from conftest import RecordingListener, all_handles

from colloquy.context.message import Message, Role
from colloquy.context.parts import BlobPart, TextPart, ToolCallPart, ToolResultPart
from colloquy.context.pruner import compute_closure


def _assert_no_dangling_edges(store):
    present = all_handles(store)
    for message in store.snapshot():
        own = message.handles()
        for key, values in message.dependencies.items():
            assert key in own
            assert set(values) <= present


def test_pruning_call_removes_result_in_other_message(store, build):
    build.user("go")
    call, result = build.exchange("echo", {"output": "hi"}, {"text": "hi"}, call_id="1")

    removed = store.pruner.prune_by_reference([call], "test")

    assert removed == {call.handle, result.handle}
    assert not store.contains_part(call.handle)
    assert not store.contains_part(result.handle)
    # both the model message and the tool message are gone
    assert [m.role for m in store.snapshot()] == [Role.USER]


def test_pruning_result_removes_call(store, build):
    build.user("go")
    call, result = build.exchange("echo", {"output": "hi"}, call_id="1")
    keep_call, keep_result = build.exchange("echo", {"output": "other"}, call_id="2")

    store.pruner.prune_by_reference([result.handle], "test")

    assert not store.contains_part(call.handle)
    assert store.contains_part(keep_call.handle)
    assert store.contains_part(keep_result.handle)
    _assert_no_dangling_edges(store)


def test_closure_is_transitive():
    a, b, c, d = (TextPart(text=t) for t in "abcd")
    first = Message(sequence_id=1, role=Role.USER, parts=[a, b])
    second = Message(sequence_id=2, role=Role.USER, parts=[c, d])
    first.link_dependency(a, c)
    second.link_dependency(c, b)

    closure = compute_closure([first, second], {a.handle})

    assert closure == {a.handle, b.handle, c.handle}


def test_second_prune_is_a_no_op(store, build):
    build.user("go")
    call, _ = build.exchange("echo", {"output": "hi"}, call_id="1")
    build.exchange("echo", {"output": "again"}, call_id="2")
    listener = RecordingListener()
    store.add_listener(listener)

    store.pruner.prune_by_reference([call], "first")
    after_first = [(m.sequence_id, [p.handle for p in m.parts], dict(m.dependencies)) for m in store.snapshot()]
    notifications = len(listener.changes)

    removed = store.pruner.prune_by_reference([call], "second")

    assert removed == set()
    assert len(listener.changes) == notifications
    assert [
        (m.sequence_id, [p.handle for p in m.parts], dict(m.dependencies)) for m in store.snapshot()
    ] == after_first


def test_partial_message_prune_keeps_siblings(store, build):
    build.user("go")
    text = TextPart(text="I will call two tools")
    first = ToolCallPart(name="echo", args={"text": "a"}, id="1")
    second = ToolCallPart(name="echo", args={"text": "b"}, id="2")
    model = build.model(text, first, second)
    build.result(model, first, {"output": "a"})
    build.result(model, second, {"output": "b"})

    store.pruner.prune_tool_call("1", "done with it")

    remaining = store.find(model.sequence_id)
    assert [p.handle for p in remaining.parts] == [text.handle, second.handle]
    assert list(remaining.dependencies) == [second.handle]
    _assert_no_dangling_edges(store)


def test_prune_messages_removes_whole_messages(store, build):
    first = build.user("one")
    second = build.user("two")

    store.pruner.prune_messages([first.sequence_id], "cleanup")

    assert [m.sequence_id for m in store.snapshot()] == [second.sequence_id]


def test_prune_parts_by_index(store, build):
    extra = TextPart(text="drop me")
    message = build.model(TextPart(text="keep me"), extra)

    store.pruner.prune_parts(message.sequence_id, [1], "trim")

    assert [p.text for p in store.find(message.sequence_id).parts] == ["keep me"]
    assert store.pruner.prune_parts(999, [0], "missing") == set()


def test_prune_ephemeral_refuses_stateful_calls(store, build):
    build.user("go")
    build.resource("A", call_id="5")

    with pytest.raises(ValueError, match="stateful"):
        store.pruner.prune_ephemeral_tool_call(["5"], "nope")

    assert store.resources.lookup("A").resource_id == "A"


def test_prune_other_refuses_tool_parts_and_takes_blobs(store, build):
    build.user("go")
    call, _ = build.exchange("echo", {"output": "x"}, call_id="1")
    blob = BlobPart(mime_type="image/png", data=b"123")
    build.model(TextPart(text="look"), blob)

    with pytest.raises(ValueError, match="tool part"):
        store.pruner.prune_other([call], "nope")

    removed = store.pruner.prune_other([blob], "seen it")
    assert removed == {blob.handle}


def test_pruning_result_removes_linked_attachments(store, build):
    build.user("show me")
    call_message, call = build.call("attach", call_id="1")
    _, result = build.result(call_message, call, {"output": {"attached": ["a.png"]}})
    blob = BlobPart(mime_type="image/png", data=b"png", source="a.png")
    feedback = Message(
        sequence_id=store.next_sequence_id(),
        role=Role.USER,
        parts=[TextPart(text="Tool Feedback:"), blob],
        tool_feedback=True,
    )
    feedback.link_dependency(blob, result)
    store.add(feedback)

    store.pruner.prune_tool_call("1", "done")

    assert not store.contains_part(blob.handle)
    assert not store.contains_part(result.handle)
    assert store.find(feedback.sequence_id) is not None
    _assert_no_dangling_edges(store)


def test_random_graph_prunes_leave_no_dangling_edges(store, build):
    build.user("go")
    pairs = [build.exchange("echo", {"output": str(i)}, call_id=str(i)) for i in range(6)]
    # chain some results together so closures span several messages
    for (_, left), (right_call, _) in zip(pairs[::2], pairs[1::2]):
        owner = store.locate(left.handle)[0]
        store.link_dependency(owner.sequence_id, left, right_call)

    store.pruner.prune_by_reference([pairs[0][0]], "chain")
    _assert_no_dangling_edges(store)
    assert not store.contains_part(pairs[1][1].handle)
    assert store.contains_part(pairs[2][0].handle)

    store.pruner.prune_by_reference([pairs[5][1]], "chain")
    _assert_no_dangling_edges(store)
    assert not store.contains_part(pairs[4][0].handle)


def test_unrelated_tool_result_without_links_is_removed_alone(store, build):
    build.user("go")
    lonely = ToolResultPart(name="echo", payload={"output": "x"}, id="77")
    build.model(lonely)

    assert store.pruner.prune_by_reference([lonely], "lonely") == {lonely.handle}
