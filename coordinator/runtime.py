"""
Quote Commander — Commander Runtime

The per-request coordinator. process_event() handles exactly one
OverseerEvent and is only ever invoked by the single ordered consumer
of that request's queue partition, so it reads and writes
CommanderState without locks.

  1. acquire state (load, or rebuild from the request's active calls
     with a bounded retry when none are visible yet)
  2. register the emitting call if it is new
  3. deterministic update from the event
  4. LLM analysis for decision-worthy events (best effort)
  5. stage directives for calls still active, one at a time
  6. persist CommanderState, even if step 4 failed

Usage:
    commander = Commander(store, llm=create_llm("standard"), settings=settings)
    result = await commander.process_event(event)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from coordinator import analyzer
from coordinator.store import StateStore, StoreError
from coordinator.types import Budget, CommanderState, TrackedCall
from engine.config import Settings
from engine.events import Directive, OverseerEvent
from engine.logging import log_event
from engine.types import CallState

logger = logging.getLogger("quote_commander.commander")


@dataclass
class CommanderResult:
    state: CommanderState
    duplicate: bool = False
    analyzed: bool = False
    analysis_error: str = ""
    staged: list[str] = field(default_factory=list)    # directive ids
    skipped: list[str] = field(default_factory=list)


class Commander:
    """Cross-call coordinator for the quote requests routed to this consumer."""

    def __init__(self, store: StateStore, llm=None, settings: Settings | None = None):
        self.store = store
        self.llm = llm
        self.settings = settings or store.settings

    # ─── Step 1 ─────────────────────────────────────────────────────

    def _seed(self, quote_request_id: str, organization_id: str,
              calls: list[CallState]) -> CommanderState:
        state = CommanderState.create(quote_request_id, organization_id)
        for call in calls:
            state.active_calls.setdefault(call.call_id, TrackedCall(
                supplier_id=call.supplier_id, supplier_name=call.supplier_name,
            ))
            for part in call.parts:
                if part.part_number not in state.parts:
                    state.parts.append(part.part_number)
                if part.budget_max is not None and part.part_number not in state.budgets:
                    state.budgets[part.part_number] = Budget.create(
                        part.budget_max, self.settings.target_price_ratio,
                    )
        return state

    async def acquire_state(self, event: OverseerEvent) -> CommanderState:
        existing = await self.store.get_commander(event.quote_request_id)
        if existing is not None:
            return existing

        calls = await self.store.active_calls_for_request(event.quote_request_id)
        attempt = 0
        while not calls and attempt < self.settings.commander_init_retries:
            attempt += 1
            logger.info(
                "No active calls yet for %s, retry %d/%d in %.2fs",
                event.quote_request_id, attempt, self.settings.commander_init_retries,
                self.settings.commander_init_retry_delay_seconds,
            )
            await asyncio.sleep(self.settings.commander_init_retry_delay_seconds)
            calls = await self.store.active_calls_for_request(event.quote_request_id)

        if not calls:
            logger.warning("Initializing Commander for %s with empty context", event.quote_request_id)
        state = self._seed(event.quote_request_id, event.organization_id, calls)
        log_event(logger, logging.INFO, "commander_initialized",
                  quote_request_id=event.quote_request_id, calls=len(calls),
                  parts=len(state.parts), retries=attempt)
        return state

    # ─── Step 2 ─────────────────────────────────────────────────────

    async def register_call(self, state: CommanderState, event: OverseerEvent) -> None:
        if event.call_id in state.active_calls:
            return
        supplier_id = ""
        try:
            call = await self.store.get_call(event.call_id)
            if call is not None:
                supplier_id = call.supplier_id
        except StoreError as e:
            logger.warning("Could not resolve supplier for %s: %s", event.call_id, e)
        state.active_calls[event.call_id] = TrackedCall(
            supplier_id=supplier_id, supplier_name=event.supplier_name,
        )
        logger.info("Registered call %s (%s) for %s",
                    event.call_id, event.supplier_name, state.quote_request_id)

    # ─── Step 5 ─────────────────────────────────────────────────────

    async def stage(self, state: CommanderState, directives: list[Directive],
                    result: CommanderResult) -> None:
        for directive in directives:
            target = state.active_calls.get(directive.target_call_id)
            if target is None or not target.is_active:
                log_event(logger, logging.INFO, "directive_skipped",
                          quote_request_id=state.quote_request_id,
                          call_id=directive.target_call_id,
                          directive_type=directive.directive_type.value,
                          reason="target call not active")
                result.skipped.append(directive.directive_id)
                continue
            try:
                await self.store.stage_directive(directive)
            except Exception as e:
                logger.error("Failed to stage %s for %s: %s",
                             directive.directive_type.value, directive.target_call_id, e)
                result.skipped.append(directive.directive_id)
                continue
            state.directives_staged += 1
            result.staged.append(directive.directive_id)
            log_event(logger, logging.INFO, "directive_staged",
                      quote_request_id=state.quote_request_id,
                      call_id=directive.target_call_id,
                      directive_id=directive.directive_id,
                      directive_type=directive.directive_type.value)

    # ─── Steps 1–6 ──────────────────────────────────────────────────

    async def process_event(self, event: OverseerEvent) -> CommanderResult:
        state = await self.acquire_state(event)

        if event.event_id and event.event_id in state.seen_event_ids:
            log_event(logger, logging.INFO, "event_duplicate",
                      quote_request_id=event.quote_request_id, event_id=event.event_id)
            return CommanderResult(state=state, duplicate=True)

        result = CommanderResult(state=state)
        await self.register_call(state, event)
        analyzer.apply_event(state, event)
        if event.event_id:
            state.remember_event(event.event_id)

        if analyzer.should_analyze(event) and self.llm is not None and state.active_call_ids():
            result.analyzed = True
            try:
                directives = await analyzer.analyze_event(
                    self.llm, state, event, self.settings.commander_llm_timeout_seconds,
                )
            except Exception as e:
                result.analysis_error = f"{type(e).__name__}: {e}"
                logger.warning("Commander analysis failed for %s (%s): %s",
                               event.quote_request_id, event.event_type.value,
                               result.analysis_error)
                directives = []
            await self.stage(state, directives, result)

        await self.store.save_commander(state)

        log_event(logger, logging.INFO, "event_processed",
                  quote_request_id=event.quote_request_id, call_id=event.call_id,
                  event_type=event.event_type.value, event_id=event.event_id,
                  events_processed=state.events_processed,
                  active_calls=len(state.active_call_ids()),
                  analyzed=result.analyzed, analysis_error=result.analysis_error or None,
                  staged=len(result.staged), skipped=len(result.skipped))
        return result
