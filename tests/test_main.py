from conftest import FakeClient

from colloquy.main import _reply_start


def test_reply_start_does_not_consume_sequence_ids(make_chat):
    chat = make_chat(FakeClient())
    assert _reply_start(chat) == 1

    chat.send_text("hello")
    since = _reply_start(chat)
    assert _reply_start(chat) == since
    chat.send_text("again")

    ids = [m.sequence_id for m in chat.store.snapshot()]
    assert ids == list(range(1, len(ids) + 1))
    assert ids[2] == since
