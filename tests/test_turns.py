from switchboard.models.registry import ProtocolKind
from switchboard.orchestrator.turns import (
    PENDING_TURN_ID,
    RETAINED_TERMINAL_TURNS,
    TurnLifecycleManager,
    TurnState,
)
from switchboard.state.threads import InMemoryThreadStore, ItemKind


def _manager():
    store = InMemoryThreadStore()
    return TurnLifecycleManager(store), store


def test_begin_acknowledge_complete():
    manager, store = _manager()
    turn = manager.begin("t1", "agent", "gpt-5", ProtocolKind.RPC)
    assert turn.id == PENDING_TURN_ID
    assert manager.is_processing("t1")
    assert store.get_thread("t1").status.is_processing

    assert manager.acknowledge(turn.token, "turn-1")
    assert turn.state == TurnState.ACTIVE
    assert store.get_thread("t1").active_turn_id == "turn-1"

    assert manager.complete(turn.token)
    assert not manager.is_processing("t1")
    assert store.get_thread("t1").active_turn_id is None
    assert manager.current_turn("t1") is None


def test_interrupt_is_synchronous_and_marks_pending_interrupt():
    manager, store = _manager()
    turn = manager.begin("t1", "agent", None, ProtocolKind.RPC)

    interrupted = manager.interrupt("t1")

    assert interrupted is turn
    assert turn.state == TurnState.INTERRUPTED
    assert not manager.is_processing("t1")
    assert store.get_thread("t1").active_turn_id is None
    assert store.items("t1")[-1].text == "Session stopped."
    assert manager.is_pending_interrupt(turn.token)

    # The late acknowledgment records the id but does not revive the turn.
    assert not manager.acknowledge(turn.token, "turn-9")
    assert turn.id == "turn-9"
    assert turn.state == TurnState.INTERRUPTED
    assert store.get_thread("t1").active_turn_id is None
    assert not manager.complete(turn.token)
    assert not manager.fail(turn.token, "boom")
    assert not any(item.kind == ItemKind.ERROR for item in store.items("t1"))


def test_interrupt_with_known_id_is_not_pending():
    manager, _ = _manager()
    turn = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    manager.acknowledge(turn.token, "turn-1")
    manager.interrupt("t1")
    assert not manager.is_pending_interrupt(turn.token)


def test_only_the_current_turn_clears_processing():
    manager, store = _manager()
    first = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    second = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    assert manager.current_turn("t1") is second

    manager.fail(first.token, "first failed")
    assert first.state == TurnState.FAILED
    assert manager.is_processing("t1")
    assert store.items("t1")[-1].text == "first failed"

    manager.complete(second.token)
    assert not manager.is_processing("t1")


def test_append_output_stops_after_terminal_state():
    manager, _ = _manager()
    turn = manager.begin("t1", "acp", None, ProtocolKind.SESSION)
    assert manager.append_output(turn.token, "a") == "a"
    assert manager.append_output(turn.token, "b") == "ab"
    manager.complete(turn.token)
    assert manager.append_output(turn.token, "c") is None
    assert turn.output == "ab"


def test_find_by_backend_id():
    manager, _ = _manager()
    turn = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    manager.acknowledge(turn.token, "turn-7")
    assert manager.find_by_backend_id("t1", "turn-7") is turn
    assert manager.find_by_backend_id("t2", "turn-7") is None
    assert manager.find_turn(turn.token) is turn


def test_forget_drops_terminal_turns_only():
    manager, _ = _manager()
    turn = manager.begin("t1", "claude", None, ProtocolKind.HTTP)
    assert not manager.forget(turn.token)

    manager.interrupt("t1")
    assert manager.is_pending_interrupt(turn.token)
    assert manager.forget(turn.token)
    assert manager.find_turn(turn.token) is None
    assert not manager.is_pending_interrupt(turn.token)
    assert not manager.forget(turn.token)


def test_forget_removes_backend_id_index():
    manager, _ = _manager()
    turn = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    manager.acknowledge(turn.token, "turn-7")
    manager.complete(turn.token)
    manager.forget(turn.token)
    assert manager.find_by_backend_id("t1", "turn-7") is None


def test_terminal_turns_are_evicted_beyond_retention():
    manager, _ = _manager()
    first = manager.begin("t1", "agent", None, ProtocolKind.RPC)
    manager.acknowledge(first.token, "turn-0")
    manager.complete(first.token)
    for index in range(RETAINED_TERMINAL_TURNS):
        turn = manager.begin("t1", "agent", None, ProtocolKind.RPC)
        manager.fail(turn.token, f"boom {index}")

    assert manager.find_turn(first.token) is None
    assert manager.find_by_backend_id("t1", "turn-0") is None
    assert manager.find_turn(turn.token) is turn
