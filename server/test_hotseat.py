"""
Test suite for pass-and-play matches (hotseat.py).

Covers:
- Hand-off gate between different humans
- No gate for a single human or when the turn stays put (Addy)
- CPU seats played inline
- Hidden hands while gated

Run with: pytest test_hotseat.py -v
"""

import pytest

from game import Card, MatchState, WildKind
from hotseat import HandoffPending, LocalMatch, LocalSeat


def humans(n):
    return [LocalSeat(f"Human {i}") for i in range(n)]


def first_turn(match: LocalMatch) -> None:
    """Hand the device to the first player."""
    match.confirm_handoff()


# =============================================================================
# Hand-off gate
# =============================================================================

class TestHandoffGate:

    def test_starts_gated_for_first_player(self):
        match = LocalMatch(humans(3), seed=4)
        assert match.awaiting_handoff == 0
        assert match.visible_hand() is None

    def test_confirm_reveals_hand(self):
        match = LocalMatch(humans(3), seed=4)
        assert match.confirm_handoff() == 0
        assert match.visible_hand() == match.state.hand(0)

    def test_confirm_without_pending_handoff(self):
        match = LocalMatch(humans(3), seed=4)
        first_turn(match)
        with pytest.raises(RuntimeError):
            match.confirm_handoff()

    def test_turn_change_closes_gate(self):
        match = LocalMatch(humans(3), seed=4)
        first_turn(match)

        result = match.draw()

        assert result.accepted
        assert match.awaiting_handoff == 1
        assert match.visible_hand() is None

    def test_actions_refused_while_gated(self):
        match = LocalMatch(humans(3), seed=4)
        first_turn(match)
        match.draw()

        with pytest.raises(HandoffPending) as exc:
            match.draw()
        assert exc.value.seat == 1
        assert match.state.version == 1

    def test_rejected_action_keeps_device(self):
        match = LocalMatch(humans(3), seed=4)
        first_turn(match)

        result = match.play("no-such-card")

        assert not result.accepted
        assert match.awaiting_handoff is None
        assert match.visible_hand() == match.state.hand(0)

    def test_addy_keeps_device(self):
        match = LocalMatch(humans(3), seed=4)
        first_turn(match)
        addy = Card.wild_card("wild-addy-1", WildKind.ADDY)
        match.state = MatchState(
            draw_pile=(Card.number_card("number-9-1", 9),),
            discard_pile=(Card.number_card("number-5-6", 5),),
            hands=(
                (addy, Card.number_card("number-2-1", 2)),
                (Card.number_card("number-1-1", 1),),
                (Card.number_card("number-3-1", 3),),
            ),
            required_number=5,
            active_player=0,
            player_count=3,
        )

        result = match.play("wild-addy-1")

        assert result.accepted
        assert match.state.active_player == 0
        assert match.awaiting_handoff is None


class TestSingleHuman:

    def test_no_gate_with_one_human(self):
        seats = [LocalSeat("Solo"), LocalSeat("Bot A", is_cpu=True), LocalSeat("Bot B", is_cpu=True)]
        match = LocalMatch(seats, seed=9)
        assert match.awaiting_handoff is None
        assert match.visible_hand() == match.state.hand(0)

    def test_human_cannot_act_on_cpu_turn(self):
        seats = [LocalSeat("Solo"), LocalSeat("Bot A", is_cpu=True), LocalSeat("Bot B", is_cpu=True)]
        match = LocalMatch(seats, seed=9)
        match.draw()

        assert match.visible_hand() is None
        with pytest.raises(RuntimeError):
            match.draw()

    @pytest.mark.asyncio
    async def test_cpu_turns_return_device(self):
        seats = [LocalSeat("Solo"), LocalSeat("Bot A", is_cpu=True), LocalSeat("Bot B", is_cpu=True)]
        match = LocalMatch(seats, seed=9)
        match.draw()

        results = await match.run_cpu_turns()

        assert results
        assert all(r.accepted for r in results)
        if not (match.is_finished or match.is_stalled):
            assert match.state.active_player == 0
            assert match.awaiting_handoff is None


class TestMixedSeats:

    @pytest.mark.asyncio
    async def test_gate_after_cpu_turn_for_other_human(self):
        seats = [LocalSeat("Ann"), LocalSeat("Bot", is_cpu=True), LocalSeat("Bo")]
        match = LocalMatch(seats, seed=13)
        first_turn(match)
        match.draw()
        assert match.awaiting_handoff is None  # CPU's turn, nothing to hide

        await match.run_cpu_turns()

        if not (match.is_finished or match.is_stalled):
            active = match.state.active_player
            assert not seats[active].is_cpu
            assert match.awaiting_handoff == (None if active == 0 else active)
