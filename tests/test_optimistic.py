"""Tests for the optimistic board: commit, revert, and out-of-order confirmations."""

from __future__ import annotations

import asyncio
import logging

import pytest
from pydantic import BaseModel

from salesdesk.core.models import ActionError, ActionResult
from salesdesk.sync.optimistic import MutationOutcome, OptimisticBoard


class Card(BaseModel):
    id: str
    bucket: str = ""
    rank: int = 0


def _place(card: Card, bucket: str) -> Card:
    return card.model_copy(update={"bucket": bucket})


def _board(**kwargs) -> OptimisticBoard[Card]:
    buckets = {
        "P": [Card(id="A", bucket="P"), Card(id="X", bucket="P"), Card(id="B", bucket="P")],
        "Q": [],
        "R": [],
    }
    return OptimisticBoard(buckets, place=_place, **kwargs)


def _ids(board: OptimisticBoard[Card], bucket: str) -> list[str]:
    return [c.id for c in board.items(bucket)]


def confirm_after(gate: asyncio.Event | None = None, success: bool = True, message: str = "nope"):
    async def _confirm() -> ActionResult:
        if gate is not None:
            await gate.wait()
        if success:
            return ActionResult.ok()
        return ActionResult.fail(ActionError.INVALID_STATE, message)

    return _confirm


class TestCommitAndRevert:
    @pytest.mark.asyncio
    async def test_move_applies_immediately_and_commits(self):
        board = _board()
        gate = asyncio.Event()
        op = board.begin_move("X", "P", "Q", confirm_after(gate))

        assert _ids(board, "P") == ["A", "B"]
        assert _ids(board, "Q") == ["X"]
        assert board.items("Q")[0].bucket == "Q"
        assert board.pending == 1

        gate.set()
        assert await op == MutationOutcome.COMMITTED
        assert _ids(board, "Q") == ["X"]
        assert board.pending == 0
        assert board.last_error is None

    @pytest.mark.asyncio
    async def test_failure_restores_original_position(self):
        errors: list[str] = []
        board = _board(on_error=errors.append)
        op = board.begin_move("X", "P", "Q", confirm_after(success=False, message="Invalid stage"))

        assert await op == MutationOutcome.REVERTED
        assert _ids(board, "P") == ["A", "X", "B"]
        assert board.items("P")[1].bucket == "P"
        assert _ids(board, "Q") == []
        assert errors == ["Invalid stage"]
        assert board.last_error == "Invalid stage"
        assert op.result.error == ActionError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_exception_in_confirm_reverts(self):
        async def boom() -> ActionResult:
            raise ConnectionError("network down")

        board = _board()
        op = board.begin_move("X", "P", "Q", boom)
        assert await op == MutationOutcome.REVERTED
        assert op.result.message == "network down"
        assert op.result.error is None
        assert "X" in _ids(board, "P")

    @pytest.mark.asyncio
    async def test_tagged_failure_does_not_take_exception_path(self, caplog):
        board = _board()
        with caplog.at_level(logging.ERROR, logger="salesdesk.sync.optimistic"):
            op = board.begin_move("X", "P", "Q", confirm_after(success=False))
            assert await op == MutationOutcome.REVERTED
        assert "raised" not in caplog.text
        assert op.result.error == ActionError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_noop_moves(self):
        board = _board()
        assert board.begin_move("X", "P", "P", confirm_after()) is None
        assert board.begin_move("X", "Q", "R", confirm_after()) is None
        assert board.begin_move("missing", "P", "Q", confirm_after()) is None
        assert board.pending == 0
        assert _ids(board, "P") == ["A", "X", "B"]

    @pytest.mark.asyncio
    async def test_sort_key_keeps_bucket_order(self):
        buckets = {
            "P": [Card(id="X", rank=2)],
            "Q": [Card(id="Y", rank=1), Card(id="Z", rank=3)],
        }
        board = OptimisticBoard(buckets, sort_key=lambda c: c.rank)
        op = board.begin_move("X", "P", "Q", confirm_after())
        assert _ids(board, "Q") == ["Y", "X", "Z"]
        await op


class TestOutOfOrderConfirmations:
    @pytest.mark.asyncio
    async def test_stale_failure_does_not_undo_newer_move(self):
        board = _board()
        first_gate = asyncio.Event()
        first = board.begin_move("X", "P", "Q", confirm_after(first_gate, success=False))
        second = board.begin_move("X", "Q", "R", confirm_after())

        assert await second == MutationOutcome.COMMITTED
        first_gate.set()
        assert await first == MutationOutcome.SUPERSEDED

        assert _ids(board, "R") == ["X"]
        assert _ids(board, "P") == ["A", "B"]
        assert _ids(board, "Q") == []
        assert first.result.error == ActionError.INVALID_STATE
        assert first.result.message == "nope"

    @pytest.mark.asyncio
    async def test_stale_failure_while_newer_still_in_flight(self):
        board = _board()
        second_gate = asyncio.Event()
        first = board.begin_move("X", "P", "Q", confirm_after(success=False))
        second = board.begin_move("X", "Q", "R", confirm_after(second_gate))

        assert await first == MutationOutcome.SUPERSEDED
        assert _ids(board, "R") == ["X"]

        second_gate.set()
        assert await second == MutationOutcome.COMMITTED
        assert _ids(board, "R") == ["X"]

    @pytest.mark.asyncio
    async def test_newer_failure_restores_to_its_own_from_bucket(self):
        board = _board()
        first_gate = asyncio.Event()
        first = board.begin_move("X", "P", "Q", confirm_after(first_gate))
        second = board.begin_move("X", "Q", "R", confirm_after(success=False))

        assert await second == MutationOutcome.REVERTED
        assert _ids(board, "Q") == ["X"]

        first_gate.set()
        assert await first == MutationOutcome.COMMITTED
        assert _ids(board, "Q") == ["X"]

    @pytest.mark.asyncio
    async def test_both_fail_newest_last_returns_to_origin(self):
        board = _board()
        first_gate = asyncio.Event()
        second_gate = asyncio.Event()
        first = board.begin_move("X", "P", "Q", confirm_after(first_gate, success=False))
        second = board.begin_move("X", "Q", "R", confirm_after(second_gate, success=False))

        first_gate.set()
        assert await first == MutationOutcome.SUPERSEDED
        assert _ids(board, "R") == ["X"]

        second_gate.set()
        assert await second == MutationOutcome.REVERTED
        assert _ids(board, "P") == ["A", "X", "B"]
        assert _ids(board, "R") == []

    @pytest.mark.asyncio
    async def test_both_fail_newest_first_unwinds_in_order(self):
        board = _board()
        first_gate = asyncio.Event()
        first = board.begin_move("X", "P", "Q", confirm_after(first_gate, success=False))
        second = board.begin_move("X", "Q", "R", confirm_after(success=False))

        assert await second == MutationOutcome.REVERTED
        assert _ids(board, "Q") == ["X"]

        first_gate.set()
        assert await first == MutationOutcome.REVERTED
        assert _ids(board, "P") == ["A", "X", "B"]

    @pytest.mark.asyncio
    async def test_refresh_takes_ownership_from_in_flight_moves(self):
        board = _board()
        gate = asyncio.Event()
        op = board.begin_move("X", "P", "Q", confirm_after(gate, success=False))

        board.replace_all({"P": [], "Q": [], "R": [Card(id="X", bucket="R")]})
        gate.set()
        assert await op == MutationOutcome.SUPERSEDED
        assert _ids(board, "R") == ["X"]
        assert _ids(board, "P") == []

    @pytest.mark.asyncio
    async def test_independent_items_do_not_interfere(self):
        board = _board()
        a = board.begin_move("A", "P", "Q", confirm_after(success=False))
        b = board.begin_move("B", "P", "R", confirm_after())
        await board.drain()

        assert a.outcome == MutationOutcome.REVERTED
        assert b.outcome == MutationOutcome.COMMITTED
        assert _ids(board, "P") == ["A", "X"]
        assert _ids(board, "R") == ["B"]


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_commits(self):
        board = _board()
        op = board.begin_remove("X", "P", confirm_after())
        assert _ids(board, "P") == ["A", "B"]
        assert await op == MutationOutcome.COMMITTED
        assert board.locate("X") is None

    @pytest.mark.asyncio
    async def test_failed_remove_restores_item(self):
        board = _board()
        op = board.begin_remove("X", "P", confirm_after(success=False))
        assert await op == MutationOutcome.REVERTED
        assert _ids(board, "P") == ["A", "X", "B"]

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self):
        board = _board()
        assert board.begin_remove("missing", "P", confirm_after()) is None


class TestReads:
    def test_counts_and_locate(self):
        board = OptimisticBoard({"P": [Card(id="A")], "Q": []})
        assert board.counts() == {"P": 1, "Q": 0}
        assert board.locate("A")[0] == "P"
        assert board.locate("nope") is None

    def test_add_inserts_server_item(self):
        board = OptimisticBoard({"P": []}, sort_key=lambda c: c.rank)
        board.add("P", Card(id="late", rank=5))
        board.add("P", Card(id="early", rank=1))
        board.add("new", Card(id="fresh"))
        assert _ids(board, "P") == ["early", "late"]
        assert _ids(board, "new") == ["fresh"]

    @pytest.mark.asyncio
    async def test_revert_hook_sees_undone_operation(self):
        undone = []
        board = _board(on_revert=undone.append)
        kept = board.begin_remove("A", "P", confirm_after())
        lost = board.begin_remove("X", "P", confirm_after(success=False))
        await board.drain()

        assert kept.outcome == MutationOutcome.COMMITTED
        assert undone == [lost]
        assert undone[0].to_bucket is None
