"""
Pass-and-play matches on a single device.

Several humans share one screen, so a hand must never be on display while
the device changes hands. After a move that passes the turn to a different
human, the match locks behind a hand-off gate: no hand is visible and no
action is accepted until the next player confirms they hold the device.

CPU seats are played through the same AI path as room matches.

Usage:
    match = LocalMatch([LocalSeat("Ann"), LocalSeat("Bo"), LocalSeat("Cy", is_cpu=True)])
    match.confirm_handoff()          # Ann takes the device
    match.play(card_id)              # Ann plays; gate closes for Bo
    match.confirm_handoff()          # Bo takes the device
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ai import Difficulty, StrategyProvider, process_cpu_turn
from game import (
    Action,
    ActionResult,
    Card,
    MatchState,
    apply_action,
    is_stalled,
    new_match,
)

logger = logging.getLogger(__name__)


class HandoffPending(Exception):
    """An action was attempted while the device is waiting to be handed over."""

    def __init__(self, seat: int):
        self.seat = seat
        super().__init__(f"Waiting for seat {seat} to take the device")


@dataclass
class LocalSeat:
    name: str
    is_cpu: bool = False
    difficulty: Difficulty = Difficulty.MEDIUM


class LocalMatch:
    """
    A match between humans sharing a device (and optional CPU seats).

    Attributes:
        seats: Seat descriptions, index = player slot.
        state: Current MatchState.
        awaiting_handoff: Seat that must confirm before play resumes, or None.
    """

    def __init__(
        self,
        seats: list[LocalSeat],
        seed: Optional[int] = None,
        provider: Optional[StrategyProvider] = None,
        thinking_time: float = 0.0,
    ):
        self.seats = list(seats)
        self.state: MatchState = new_match(len(self.seats), seed=seed)
        self.provider = provider
        self.thinking_time = thinking_time
        self.awaiting_handoff: Optional[int] = None
        # Human seat currently holding the device
        self._holder: Optional[int] = None

        self._gate_if_needed()

    def human_seat_count(self) -> int:
        return sum(1 for s in self.seats if not s.is_cpu)

    def _active_is_cpu(self) -> bool:
        return self.seats[self.state.active_player].is_cpu

    @property
    def is_finished(self) -> bool:
        return self.state.is_finished

    @property
    def is_stalled(self) -> bool:
        return is_stalled(self.state)

    def visible_hand(self) -> Optional[tuple[Card, ...]]:
        """The hand that may be shown right now, or None while gated or on a CPU turn."""
        if self.awaiting_handoff is not None or self.state.is_finished:
            return None
        if self._active_is_cpu():
            return None
        return self.state.hand(self.state.active_player)

    def confirm_handoff(self) -> int:
        """
        The gated player confirms they have the device.

        Returns:
            The seat now holding the device.

        Raises:
            RuntimeError: If no hand-off is pending.
        """
        if self.awaiting_handoff is None:
            raise RuntimeError("No hand-off is pending")
        seat = self.awaiting_handoff
        self.awaiting_handoff = None
        self._holder = seat
        return seat

    def _gate_if_needed(self) -> None:
        if self.state.is_finished or self._active_is_cpu():
            return
        nxt = self.state.active_player
        if self.human_seat_count() == 1:
            self._holder = nxt
            return
        if nxt != self._holder:
            self.awaiting_handoff = nxt

    # -------------------------------------------------------------------------
    # Human Actions
    # -------------------------------------------------------------------------

    def play(self, card_id: str) -> ActionResult:
        return self._apply_human(Action.play(card_id))

    def draw(self) -> ActionResult:
        return self._apply_human(Action.draw())

    def _apply_human(self, action: Action) -> ActionResult:
        if self.awaiting_handoff is not None:
            raise HandoffPending(self.awaiting_handoff)
        if self._active_is_cpu():
            raise RuntimeError("It is a CPU seat's turn; call run_cpu_turns()")

        result = apply_action(self.state, self.state.active_player, action)
        if result.accepted:
            self.state = result.state
            self._gate_if_needed()
        return result

    # -------------------------------------------------------------------------
    # CPU Turns
    # -------------------------------------------------------------------------

    async def _submit_cpu(self, action: Action, expected_version: int) -> ActionResult:
        result = apply_action(self.state, self.state.active_player, action)
        if result.accepted:
            self.state = result.state
        return result

    async def run_cpu_turns(self) -> list[ActionResult]:
        """
        Play CPU seats until a human is up, the match ends, or it stalls.

        Returns:
            Results of the CPU moves made, in order.
        """
        results = []
        while not self.state.is_finished and self._active_is_cpu():
            seat = self.state.active_player
            result = await process_cpu_turn(
                lambda: self.state,
                seat,
                self.seats[seat].difficulty,
                self._submit_cpu,
                provider=self.provider,
                thinking_time=self.thinking_time,
            )
            if result is None or not result.accepted:
                logger.info(f"Local match: CPU seat {seat} cannot move, stopping")
                break
            results.append(result)

        self._gate_if_needed()
        return results
