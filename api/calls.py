"""
Quote Commander — Call Turn Handler

The I/O shell around engine.turn.run_turn for one webhook turn:

  lock call → load state → consume staged directives → run turn →
  save state → clear late directives if terminal → publish events → unlock
  → overseer review of the saved turn (stages a nudge for the next one)

The state write completes before any event is published, and events are
published before the lock is released, so the next turn of the same call
always reads the saved state and its events always follow this turn's.
Publishing failures are logged; the turn itself already succeeded.

Without an overseer LLM the review is rule-based and runs inline, before
the save. With one, it runs as a background task after the reply, takes
the call lock only to store its nudge, and is dropped if the next turn
got there first.

Usage:
    handler = CallTurnHandler(store, bus, llm=create_llm("fast"), settings=settings)
    outcome = await handler.handle_turn("call_123", "It's $42.50 each")
"""

from __future__ import annotations

import asyncio
import logging
import time

from coordinator.queue import EventBus
from coordinator.store import StateStore
from engine import overseer
from engine.config import Settings
from engine.events import (
    OverseerEvent, call_ended_event, derive_events, error_event, select_directive,
)
from engine.logging import log_event
from engine.nodes import determine_outcome, opening_line
from engine.turn import TurnOutcome, run_turn
from engine.types import CallState, CallStatus, NextAction, Part, Speaker, initialize_call_state

logger = logging.getLogger("quote_commander.calls")


class CallNotFound(Exception):
    """No stored state for the call (never initialized, or expired)."""


class CallBusy(Exception):
    """Another turn for the same call is still in flight."""


class CallTurnHandler:
    """Per-call turn handling over the shared store and event bus."""

    def __init__(
        self,
        store: StateStore,
        bus: EventBus,
        llm=None,
        settings: Settings | None = None,
        overseer_llm=None,
    ):
        self.store = store
        self.bus = bus
        self.llm = llm
        self.overseer_llm = overseer_llm
        self.settings = settings or store.settings
        self._overseers: set[asyncio.Task] = set()

    async def _publish(self, events: list[OverseerEvent]) -> None:
        for event in events:
            try:
                await self.bus.publish(event)
            except Exception as e:
                logger.error("Failed to publish %s for %s: %s",
                             event.event_type.value, event.call_id, e)

    async def _save(self, state: CallState) -> None:
        ttl = self.settings.call_retention_seconds if state.is_terminal else self.settings.call_ttl_seconds
        await self.store.save_call(state, ttl_seconds=ttl)
        if state.is_terminal:
            await self.store.clear_directives(state.call_id)

    # ─── Initialization ─────────────────────────────────────────────

    async def start_call(
        self,
        quote_request_id: str,
        parts: list[Part],
        **identity,
    ) -> tuple[CallState, str]:
        """Seed and store a new call; returns it with the opening line."""
        state = initialize_call_state(
            quote_request_id,
            parts,
            max_negotiation_attempts=self.settings.max_negotiation_attempts,
            bot_screening_max_attempts=self.settings.bot_screening_max_attempts,
            **identity,
        )
        greeting = opening_line(state)
        state.say(Speaker.AI, greeting)
        await self._save(state)
        log_event(logger, logging.INFO, "call_initialized",
                  call_id=state.call_id, quote_request_id=quote_request_id,
                  supplier_name=state.supplier_name, parts=len(parts))
        return state, greeting

    # ─── Turns ──────────────────────────────────────────────────────

    async def handle_turn(self, call_id: str, utterance: str) -> TurnOutcome:
        token = await self.store.wait_for_call_lock(call_id)
        if token is None:
            raise CallBusy(call_id)
        try:
            state = await self.store.get_call(call_id)
            if state is None:
                raise CallNotFound(call_id)

            directive = None
            if not state.is_terminal:
                staged = await self.store.consume_directives(call_id)
                directive = select_directive(staged)
                for dropped in staged:
                    if dropped is not directive:
                        log_event(logger, logging.INFO, "directive_superseded",
                                  call_id=call_id, directive_id=dropped.directive_id,
                                  directive_type=dropped.directive_type.value)

            try:
                outcome = await run_turn(self.llm, state, utterance,
                                         directive=directive, settings=self.settings)
            except Exception as e:
                await self._publish([error_event(state, f"{type(e).__name__}: {e}")])
                raise

            if outcome.processed:
                oversee = self.settings.overseer_enabled and not outcome.state.is_terminal
                if oversee and self.overseer_llm is None:
                    await self._oversee_inline(outcome.state)
                await self._save(outcome.state)
                await self._publish(derive_events(state, outcome.state))
                if oversee and self.overseer_llm is not None:
                    task = asyncio.create_task(self.oversee_turn(outcome.state))
                    self._overseers.add(task)
                    task.add_done_callback(self._overseers.discard)
            return outcome
        finally:
            await self.store.release_call_lock(call_id, token)

    # ─── End of call ────────────────────────────────────────────────

    async def end_call(self, call_id: str, reason: str = "") -> CallState:
        """
        End-of-call report from the voice platform (hang-up, timeout).

        A call still in progress is closed as completed, or failed when
        nothing was priced, and call_ended is published. Already-terminal
        calls are returned unchanged.
        """
        token = await self.store.wait_for_call_lock(call_id)
        if token is None:
            raise CallBusy(call_id)
        try:
            state = await self.store.get_call(call_id)
            if state is None:
                raise CallNotFound(call_id)
            if state.is_terminal:
                return state

            if state.priced_quotes():
                state.status = CallStatus.COMPLETED
            else:
                state.status = CallStatus.FAILED
                state.next_action = NextAction.EMAIL_FALLBACK
            if reason:
                state.say(Speaker.SYSTEM, f"Call ended: {reason}")
            state.outcome = determine_outcome(state)
            state.updated_at = time.time()
            await self._save(state)
            await self._publish([call_ended_event(state)])
            log_event(logger, logging.INFO, "call_ended",
                      call_id=call_id, status=state.status.value, reason=reason or None)
            return state
        finally:
            await self.store.release_call_lock(call_id, token)

    # ─── Overseer ───────────────────────────────────────────────────

    async def _oversee_inline(self, state: CallState) -> None:
        try:
            review = await overseer.oversee(None, state, self.settings)
        except Exception as e:
            logger.error("Overseer failed for %s: %s: %s", state.call_id, type(e).__name__, e)
            return
        if review is not None:
            overseer.apply_review(state, review)

    async def oversee_turn(self, state: CallState) -> bool:
        """
        Review a saved turn with the overseer LLM and store the result.

        Returns True when the nudge was stored; False when the turn was
        gated out, already reviewed, or superseded by a newer turn.
        """
        try:
            review = await overseer.oversee(self.overseer_llm, state, self.settings)
        except Exception as e:
            logger.error("Overseer failed for %s: %s: %s", state.call_id, type(e).__name__, e)
            return False
        if review is None:
            return False

        token = await self.store.wait_for_call_lock(state.call_id)
        if token is None:
            log_event(logger, logging.INFO, "overseer_dropped",
                      call_id=state.call_id, turn_number=state.turn_number, reason="call busy")
            return False
        try:
            current = await self.store.get_call(state.call_id)
            if current is None or current.is_terminal or current.turn_number != state.turn_number:
                log_event(logger, logging.INFO, "overseer_dropped",
                          call_id=state.call_id, turn_number=state.turn_number,
                          reason="turn superseded")
                return False
            overseer.apply_review(current, review)
            await self._save(current)
            return review.nudge is not None
        finally:
            await self.store.release_call_lock(state.call_id, token)

    async def drain_overseers(self) -> None:
        """Wait for background overseer reviews (tests, shutdown)."""
        if self._overseers:
            await asyncio.gather(*list(self._overseers), return_exceptions=True)
