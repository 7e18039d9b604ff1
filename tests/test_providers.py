import threading

import pytest

from colloquy.context.parts import TextPart
from colloquy.providers.base import ContextPosition, ContextProvider
from colloquy.providers.factory import ContentFactory


class Static(ContextProvider):
    def __init__(self, provider_id, text, enabled=True, position=ContextPosition.AUGMENTED_WORKSPACE):
        super().__init__(enabled)
        self.provider_id = provider_id
        self.name = provider_id.title()
        self.text = text
        self.position = position

    def produce(self, chat):
        return [TextPart(text=self.text)]


class Broken(ContextProvider):
    provider_id = "broken"
    name = "Broken"

    def produce(self, chat):
        raise RuntimeError("provider exploded")


class Blocking(ContextProvider):
    provider_id = "slow"
    name = "Slow"

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def produce(self, chat):
        self.release.wait(timeout=5)
        return [TextPart(text="finally")]


@pytest.fixture
def factories():
    created = []

    def _make(*providers, **kwargs):
        factory = ContentFactory(providers, **kwargs)
        created.append(factory)
        return factory

    yield _make
    for factory in created:
        factory.shutdown()


def _texts(parts):
    return [p.text for p in parts]


@pytest.mark.parametrize("parallel", [True, False])
def test_failing_provider_does_not_affect_siblings(factories, parallel):
    factory = factories(Static("first", "one"), Broken(), Static("last", "two"), parallel=parallel)

    texts = _texts(factory.produce(ContextPosition.AUGMENTED_WORKSPACE, chat=None))

    assert "one" in texts
    assert "two" in texts
    assert "Error in Broken: provider exploded" in texts
    # output follows registration order
    assert texts.index("one") < texts.index("Error in Broken: provider exploded") < texts.index("two")


def test_positions_are_separate(factories):
    factory = factories(
        Static("workspace", "ws"),
        Static("system", "sys", position=ContextPosition.SYSTEM_INSTRUCTIONS),
    )

    assert "sys" not in _texts(factory.produce(ContextPosition.AUGMENTED_WORKSPACE, chat=None))
    assert "sys" in _texts(factory.produce(ContextPosition.SYSTEM_INSTRUCTIONS, chat=None))


def test_disabled_providers_are_listed(factories):
    factory = factories(Static("on", "visible"), Static("off", "hidden", enabled=False))

    texts = _texts(factory.produce(ContextPosition.AUGMENTED_WORKSPACE, chat=None))

    assert "hidden" not in texts
    assert "Disabled context providers: Off (off)" in texts


def test_toggling_providers(factories):
    factory = factories(Static("a", "x"), Static("b", "y"))

    assert factory.set_enabled(["a", "zzz"], False) == ["a"]
    assert not factory.get("a").enabled

    factory.set_enabled(["a"], True)
    assert factory.get("a").enabled


def test_interrupt_stops_waiting(factories):
    slow = Blocking()
    factory = factories(Static("fast", "quick"), slow, timeout=5)
    interrupt = threading.Event()
    interrupt.set()
    try:
        texts = _texts(factory.produce(ContextPosition.AUGMENTED_WORKSPACE, chat=None, interrupt=interrupt))
    finally:
        slow.release.set()

    assert "Slow: skipped (not ready in time)" in texts
    assert "finally" not in texts


def test_slow_provider_times_out(factories):
    slow = Blocking()
    factory = factories(Static("fast", "quick"), slow, timeout=0.2)
    try:
        texts = _texts(factory.produce(ContextPosition.AUGMENTED_WORKSPACE, chat=None))
    finally:
        slow.release.set()

    assert "quick" in texts
    assert "Slow: skipped (not ready in time)" in texts
