import pytest

from duet.coordinator.pairing import (
    FIFO,
    SINGLE_SLOT,
    FifoPairingQueue,
    PairingQueue,
    UnknownPairingPolicy,
    create_pairing_queue,
)


def test_single_slot_parks_then_matches() -> None:
    queue = PairingQueue()

    assert queue.match("alice") is None
    assert queue.waiting() == ["alice"]
    assert queue.match("bob") == "alice"
    assert len(queue) == 0


def test_single_slot_never_matches_self() -> None:
    queue = PairingQueue()
    queue.match("alice")

    assert queue.match("alice") is None
    assert queue.waiting() == ["alice"]


def test_single_slot_discard() -> None:
    queue = PairingQueue()
    queue.match("alice")

    assert queue.discard("bob") is False
    assert queue.discard("alice") is True
    assert "alice" not in queue
    assert queue.match("bob") is None
    assert queue.waiting() == ["bob"]


def test_fifo_matches_longest_waiter() -> None:
    queue = FifoPairingQueue()
    queue.match("alice")
    queue.match("alice")

    assert queue.waiting() == ["alice"]
    assert queue.match("bob") == "alice"
    assert queue.waiting() == []


def test_fifo_discard_keeps_order() -> None:
    queue = FifoPairingQueue()
    queue._queue.extend(["alice", "bob", "carol"])

    assert queue.discard("bob") is True
    assert queue.waiting() == ["alice", "carol"]
    assert queue.match("dave") == "alice"
    assert queue.waiting() == ["carol"]


def test_create_pairing_queue() -> None:
    assert create_pairing_queue().policy == SINGLE_SLOT
    assert create_pairing_queue("single_slot").policy == SINGLE_SLOT
    assert isinstance(create_pairing_queue("FIFO"), FifoPairingQueue)
    assert create_pairing_queue(FIFO).policy == FIFO

    with pytest.raises(UnknownPairingPolicy):
        create_pairing_queue("random")
