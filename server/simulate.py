"""
7-ate-9 AI Simulation Runner

Runs CPU-only matches on the local strategy to check the rules engine and
compare difficulty tiers. No server, websocket or strategy provider needed.
Card conservation is checked after every action.

Usage:
    python simulate.py [num_games] [num_players]
    python simulate.py detail [num_players]

Examples:
    python simulate.py 100       # 100 matches at DEFAULT_PLAYER_COUNT (4)
    python simulate.py 50 3      # 50 matches with 3 players each
    python simulate.py detail 5  # One 5-player match, move by move
"""

import random
import sys
from typing import Optional

from ai import Difficulty, choose_fallback_action
from config import config
from constants import DECK_SIZE
from game import ActionKind, MatchState, apply_action, is_stalled, new_match

# Hard stop for a single match; real matches end long before this
MAX_TURNS = 5000

SEAT_DIFFICULTIES = [
    Difficulty.EASY,
    Difficulty.MEDIUM,
    Difficulty.HARD,
    Difficulty.EXPERT,
    Difficulty.MEDIUM,
]


class ConservationError(RuntimeError):
    """The number of cards in play changed."""
    pass


class SimulationStats:
    """Track simulation statistics."""

    def __init__(self):
        self.games_played = 0
        self.total_turns = 0
        self.seat_wins: dict[int, int] = {}
        self.difficulty_wins: dict[str, int] = {}
        self.stalled_games = 0
        self.plays = 0
        self.draws = 0
        self.wild_plays: dict[str, int] = {}

    def record_action(self, kind: ActionKind, card=None):
        if kind == ActionKind.DRAW:
            self.draws += 1
            return
        self.plays += 1
        if card is not None and card.is_wild:
            name = card.wild_kind.value
            self.wild_plays[name] = self.wild_plays.get(name, 0) + 1

    def record_game(self, state: MatchState, turns: int, difficulties: list[Difficulty]):
        self.games_played += 1
        self.total_turns += turns
        if state.winner is None:
            self.stalled_games += 1
            return
        self.seat_wins[state.winner] = self.seat_wins.get(state.winner, 0) + 1
        tier = difficulties[state.winner].value
        self.difficulty_wins[tier] = self.difficulty_wins.get(tier, 0) + 1

    def report(self) -> str:
        lines = [
            "=" * 50,
            "SIMULATION RESULTS",
            "=" * 50,
            f"Games played: {self.games_played}",
            f"Stalled games: {self.stalled_games}",
            f"Total turns: {self.total_turns}",
            f"Avg turns/game: {self.total_turns / max(1, self.games_played):.1f}",
            f"Plays / draws: {self.plays} / {self.draws}",
            "",
            "WINS BY SEAT:",
        ]

        decided = max(1, self.games_played - self.stalled_games)
        for seat, wins in sorted(self.seat_wins.items()):
            lines.append(f"  Seat {seat}: {wins} ({wins / decided * 100:.1f}%)")

        lines.append("")
        lines.append("WINS BY DIFFICULTY:")
        for tier, wins in sorted(self.difficulty_wins.items(), key=lambda x: -x[1]):
            lines.append(f"  {tier}: {wins}")

        lines.append("")
        lines.append("WILD CARDS PLAYED:")
        for name, count in sorted(self.wild_plays.items(), key=lambda x: -x[1]):
            lines.append(f"  {name}: {count}")

        return "\n".join(lines)


def check_conservation(state: MatchState) -> None:
    total = state.total_cards()
    if total != DECK_SIZE:
        raise ConservationError(f"Card count is {total} at version {state.version}, expected {DECK_SIZE}")


def run_game(
    num_players: int,
    stats: SimulationStats,
    seed: Optional[int] = None,
    verbose: bool = False,
) -> MatchState:
    """
    Play one CPU-only match to the end (or until it stalls).

    Returns:
        The final MatchState.
    """
    state = new_match(num_players, seed=seed)
    difficulties = SEAT_DIFFICULTIES[:num_players]
    check_conservation(state)

    turns = 0
    while not state.is_finished and turns < MAX_TURNS:
        if is_stalled(state):
            if verbose:
                print("  Draw pile exhausted, nobody can play: stalled")
            break

        seat = state.active_player
        action = choose_fallback_action(state, seat, difficulties[seat])
        result = apply_action(state, seat, action)
        if not result.accepted:
            raise RuntimeError(
                f"Seat {seat} chose a rejected action {action} ({result.reason.value})"
            )

        stats.record_action(action.kind, result.card)
        if verbose:
            verb = "plays" if action.kind == ActionKind.PLAY else "draws"
            print(
                f"  Seat {seat} {verb} {result.card.label()}"
                f" -> need {result.state.required_number}, seat {result.state.active_player} up"
            )

        state = result.state
        check_conservation(state)
        turns += 1

    stats.record_game(state, turns, difficulties)
    return state


def run_simulation(num_games: int = 10, num_players: int = 4, verbose: bool = True):
    """Run multiple matches and report statistics."""
    print(f"\nRunning {num_games} games with {num_players} players each...")

    stats = SimulationStats()
    rng = random.Random()
    for i in range(num_games):
        state = run_game(num_players, stats, seed=rng.randrange(2**31))
        if verbose:
            outcome = f"seat {state.winner} wins" if state.winner is not None else "stalled"
            print(f"  Game {i + 1}/{num_games}: {outcome} after {state.version} actions")

    print("\n")
    print(stats.report())
    return stats


def run_detailed_game(num_players: int = 4, seed: Optional[int] = None):
    """Run a single match with move-by-move output."""
    print(f"\nRunning detailed game with {num_players} players...")
    stats = SimulationStats()
    state = run_game(num_players, stats, seed=seed, verbose=True)
    if state.winner is not None:
        print(f"\nWinner: seat {state.winner} ({SEAT_DIFFICULTIES[state.winner].value})")
    else:
        print("\nNo winner")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "detail":
        num_players = int(sys.argv[2]) if len(sys.argv) > 2 else config.match_defaults.player_count
        run_detailed_game(num_players)
    else:
        num_games = int(sys.argv[1]) if len(sys.argv) > 1 else 10
        num_players = int(sys.argv[2]) if len(sys.argv) > 2 else config.match_defaults.player_count
        run_simulation(num_games, num_players)
