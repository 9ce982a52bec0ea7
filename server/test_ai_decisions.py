"""
Test suite for CPU decisions in ai.py.

Covers:
- choose_fallback_action(): exact match, proximity, wild, any, draw
- validate_decision(): rejecting unknown or illegal provider answers
- HttpStrategyProvider: wire format and failure mapping (httpx.MockTransport)
- decide_action(): falling back when the provider misbehaves
- process_cpu_turn(): discarding stale decisions, cancellation
- CPU profile assignment per room

Run with: pytest test_ai_decisions.py -v
"""

import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from ai import (
    Difficulty,
    HttpStrategyProvider,
    MalformedExternalDecision,
    StrategyDecision,
    StrategyRequest,
    assign_profile,
    choose_fallback_action,
    cleanup_room_profiles,
    decide_action,
    get_profile,
    process_cpu_turn,
    release_profile,
    reset_all_profiles,
    validate_decision,
)
from game import Action, Card, MatchState, WildKind, apply_action


# =============================================================================
# Helpers
# =============================================================================

def num(value, copy=1):
    return Card.number_card(f"number-{value}-{copy}", value)


def wild(kind, copy=1):
    return Card.wild_card(f"wild-{kind.value}-{copy}", kind)


def make_state(hand, required=5, draw_pile=(), pending_addy=None, active=0):
    """Seat 0 holds `hand`; two opponents hold filler."""
    return MatchState(
        draw_pile=tuple(draw_pile),
        discard_pile=(num(required, 6),),
        hands=(tuple(hand), (num(1, 5),), (num(2, 5),)),
        required_number=required,
        active_player=active,
        player_count=3,
        pending_addy=pending_addy,
    )


class StaticProvider:
    """Strategy provider returning a canned decision (or raising)."""

    def __init__(self, decision=None, error=None):
        self.decision = decision
        self.error = error
        self.requests: list[StrategyRequest] = []

    async def decide(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.decision


# =============================================================================
# Fallback Strategy
# =============================================================================

class TestFallbackStrategy:

    def test_prefers_exact_match(self):
        state = make_state([wild(WildKind.ATE), num(5)], required=5)
        assert choose_fallback_action(state, 0, Difficulty.HARD) == Action.play("number-5-1")

    def test_wild_when_no_number_fits(self):
        state = make_state([num(3), wild(WildKind.TICKLES)], required=5)
        assert choose_fallback_action(state, 0, Difficulty.MEDIUM) == Action.play("wild-tickles-1")

    def test_draws_with_nothing_playable(self):
        state = make_state([num(3), num(4)], required=5, draw_pile=[num(9)])
        assert choose_fallback_action(state, 0, Difficulty.EXPERT) == Action.draw()

    def test_proximity_during_addy(self):
        # Pending Addy: every number is legal, so the gap heuristic decides
        state = make_state([num(4), num(9)], required=2, pending_addy=2)
        assert choose_fallback_action(state, 0, Difficulty.MEDIUM) == Action.play("number-9-1")

    def test_exact_beats_proximity_during_addy(self):
        state = make_state([num(9), num(2)], required=2, pending_addy=2)
        assert choose_fallback_action(state, 0, Difficulty.MEDIUM) == Action.play("number-2-1")

    def test_easy_plays_first_legal_card(self):
        state = make_state([num(3), wild(WildKind.NU_UH), num(5)], required=5)
        assert choose_fallback_action(state, 0, Difficulty.EASY) == Action.play("wild-nuuh-1")

    def test_fallback_is_always_accepted(self):
        state = make_state([num(3), wild(WildKind.DIVIDE), num(5)], required=5)
        for difficulty in Difficulty:
            action = choose_fallback_action(state, 0, difficulty)
            assert apply_action(state, 0, action).accepted


# =============================================================================
# Provider Decisions
# =============================================================================

class TestValidateDecision:

    def test_valid_play(self):
        state = make_state([num(5)], required=5)
        decision = StrategyDecision(action="play", card_id="number-5-1")
        assert validate_decision(decision, state, 0) == Action.play("number-5-1")

    def test_unknown_card(self):
        state = make_state([num(5)], required=5)
        with pytest.raises(MalformedExternalDecision):
            validate_decision(StrategyDecision(action="play", card_id="number-9-9"), state, 0)

    def test_illegal_card(self):
        state = make_state([num(4)], required=5)
        with pytest.raises(MalformedExternalDecision):
            validate_decision(StrategyDecision(action="play", card_id="number-4-1"), state, 0)

    def test_play_without_card(self):
        state = make_state([num(5)], required=5)
        with pytest.raises(MalformedExternalDecision):
            validate_decision(StrategyDecision(action="play"), state, 0)

    def test_draw_from_empty_pile(self):
        state = make_state([num(4)], required=5)
        with pytest.raises(MalformedExternalDecision):
            validate_decision(StrategyDecision(action="draw"), state, 0)


class TestStrategyWireFormat:

    def test_request_uses_camel_case(self):
        state = make_state([num(5)], required=7, draw_pile=[num(1)], pending_addy=7)
        payload = StrategyRequest.from_state(state, 0, Difficulty.HARD).model_dump(
            mode="json", by_alias=True
        )
        assert payload["requiredNumber"] == 7
        assert payload["canDraw"] is True
        assert payload["pendingAddy"] is True
        assert payload["pendingAddyBase"] == 7
        assert payload["difficulty"] == "hard"
        assert payload["hand"][0]["id"] == "number-5-1"

    def test_decision_parses_camel_case(self):
        decision = StrategyDecision.model_validate({"action": "play", "cardId": "x", "reasoning": "r"})
        assert decision.card_id == "x"


# =============================================================================
# HTTP Provider
# =============================================================================

def provider_with(handler) -> HttpStrategyProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStrategyProvider("http://ai.test/decide", client=client)


class TestHttpStrategyProvider:

    @pytest.mark.asyncio
    async def test_posts_request_and_parses_decision(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"action": "play", "cardId": "number-5-1"})

        provider = provider_with(handler)
        state = make_state([num(5)], required=5)
        decision = await provider.decide(StrategyRequest.from_state(state, 0, Difficulty.MEDIUM))

        assert decision.card_id == "number-5-1"
        assert seen["body"]["requiredNumber"] == 5
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_malformed(self):
        provider = provider_with(lambda request: httpx.Response(500))
        state = make_state([num(5)], required=5)
        with pytest.raises(MalformedExternalDecision):
            await provider.decide(StrategyRequest.from_state(state, 0, Difficulty.MEDIUM))

    @pytest.mark.asyncio
    async def test_garbage_body_is_malformed(self):
        provider = provider_with(lambda request: httpx.Response(200, text="not json"))
        state = make_state([num(5)], required=5)
        with pytest.raises(MalformedExternalDecision):
            await provider.decide(StrategyRequest.from_state(state, 0, Difficulty.MEDIUM))

    @pytest.mark.asyncio
    async def test_unknown_action_is_malformed(self):
        provider = provider_with(lambda request: httpx.Response(200, json={"action": "pass"}))
        state = make_state([num(5)], required=5)
        with pytest.raises(MalformedExternalDecision):
            await provider.decide(StrategyRequest.from_state(state, 0, Difficulty.MEDIUM))


class TestDecideAction:

    @pytest.mark.asyncio
    async def test_uses_provider_decision(self):
        state = make_state([num(5), wild(WildKind.ATE)], required=5)
        provider = StaticProvider(StrategyDecision(action="play", card_id="wild-ate-1"))
        action = await decide_action(state, 0, Difficulty.EXPERT, provider)
        assert action == Action.play("wild-ate-1")

    @pytest.mark.asyncio
    async def test_illegal_provider_move_falls_back(self):
        state = make_state([num(5), num(3)], required=5)
        provider = StaticProvider(StrategyDecision(action="play", card_id="number-3-1"))
        action = await decide_action(state, 0, Difficulty.EXPERT, provider)
        assert action == Action.play("number-5-1")

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        state = make_state([num(5)], required=5)
        provider = StaticProvider(error=MalformedExternalDecision("timeout"))
        action = await decide_action(state, 0, Difficulty.HARD, provider)
        assert action == Action.play("number-5-1")

    @pytest.mark.asyncio
    async def test_no_provider_uses_fallback(self):
        state = make_state([num(4)], required=5, draw_pile=[num(1, 2)])
        assert await decide_action(state, 0, Difficulty.HARD) == Action.draw()


# =============================================================================
# CPU Turn
# =============================================================================

class TestProcessCpuTurn:

    @pytest.mark.asyncio
    async def test_submits_with_current_version(self):
        state = make_state([num(5), num(1, 2)], required=5)
        holder = {"state": state}
        submitted = []

        async def submit(action, version):
            submitted.append((action, version))
            result = apply_action(holder["state"], 0, action)
            holder["state"] = result.state
            return result

        result = await process_cpu_turn(lambda: holder["state"], 0, Difficulty.MEDIUM, submit, thinking_time=0)

        assert result.accepted
        assert submitted == [(Action.play("number-5-1"), state.version)]

    @pytest.mark.asyncio
    async def test_not_our_turn_does_nothing(self):
        state = make_state([num(5)], required=5, active=1)

        async def submit(action, version):
            raise AssertionError("should not submit")

        assert await process_cpu_turn(lambda: state, 0, Difficulty.MEDIUM, submit, thinking_time=0) is None

    @pytest.mark.asyncio
    async def test_decision_discarded_when_turn_moves(self):
        before = make_state([num(5), num(1, 2)], required=5)
        after = make_state([num(5), num(1, 2)], required=5, active=1)
        snapshots = iter([before, after])

        async def submit(action, version):
            raise AssertionError("should not submit")

        result = await process_cpu_turn(lambda: next(snapshots), 0, Difficulty.MEDIUM, submit, thinking_time=0)
        assert result is None

    @pytest.mark.asyncio
    async def test_decision_revalidated_on_newer_state(self):
        before = make_state([num(5), num(7)], required=5, draw_pile=[num(3, 3)])
        # Same seat still up, but the requirement moved on
        after = replace(before, required_number=7, version=1)
        snapshots = iter([before, after])
        submitted = []

        async def submit(action, version):
            submitted.append((action, version))
            return apply_action(after, 0, action)

        await process_cpu_turn(lambda: next(snapshots), 0, Difficulty.MEDIUM, submit, thinking_time=0)
        assert submitted == [(Action.play("number-7-1"), 1)]

    @pytest.mark.asyncio
    async def test_cancel_while_thinking(self):
        state = make_state([num(5)], required=5)
        submitted = []

        async def submit(action, version):
            submitted.append(action)

        task = asyncio.create_task(
            process_cpu_turn(lambda: state, 0, Difficulty.MEDIUM, submit, thinking_time=5)
        )
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert submitted == []


# =============================================================================
# CPU Profiles
# =============================================================================

class TestProfiles:

    def setup_method(self):
        reset_all_profiles()

    def teardown_method(self):
        reset_all_profiles()

    def test_profiles_unique_per_room(self):
        names = {assign_profile(f"cpu{i}", "ROOM").name for i in range(6)}
        assert len(names) == 6
        assert assign_profile("cpu7", "ROOM") is None

    def test_same_profile_in_different_rooms(self):
        assert assign_profile("a", "AAAA", "Nova").name == "Nova"
        assert assign_profile("b", "BBBB", "Nova").name == "Nova"
        assert assign_profile("c", "AAAA", "Nova") is None

    def test_release_returns_profile(self):
        assign_profile("a", "ROOM", "Ash")
        release_profile("a")
        assert get_profile("a") is None
        assert assign_profile("b", "ROOM", "Ash").name == "Ash"

    def test_cleanup_room(self):
        assign_profile("a", "ROOM")
        cleanup_room_profiles("ROOM")
        assert get_profile("a") is None
