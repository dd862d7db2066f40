"""
Quote Commander — API Server

FastAPI application serving:
  POST /v1/calls                — seed a call, returns the opening line
  POST /v1/calls/turn           — call-turn webhook from the voice platform
  POST /v1/chat/completions     — OpenAI-compatible turn endpoint (JSON or SSE)
  POST /v1/calls/{id}/end       — end-of-call report
  GET  /v1/calls/{id}           — stored CallState
  GET  /health                  — liveness

The turn endpoints never fail at the HTTP level: any internal error is
answered with 200, a spoken apology and endCall=true so the platform
hangs up cleanly instead of retrying into a broken session.

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (no Redis: in-memory store, inline Commander)
    QC_STORE__BACKEND=memory QC_EVENTS__BACKEND=inline uvicorn api.server:app --reload

Requires: pip install fastapi uvicorn
Optional: pip install arq redis (shared store + Commander workers)
"""


import json
import logging
import os
import time
from typing import Any

logger = logging.getLogger("quote_commander.api")


def create_app(
    settings=None,
    store=None,
    bus=None,
    turn_llm=None,
    commander_llm=None,
    overseer_llm=None,
) -> Any:
    """
    Create and configure the FastAPI application.

    Collaborators default to what the settings name; tests pass their own
    store and fake LLMs. Separated from module-level creation so tests can
    create fresh instances.
    """
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse, StreamingResponse

    from api.calls import CallBusy, CallNotFound, CallTurnHandler
    from api.models import (
        CallInit, CallSummary, ChatCompletionRequest, ChatCompletionResponse,
        TurnRequest, TurnResponse,
    )
    from coordinator.queue import create_event_bus
    from coordinator.runtime import Commander
    from coordinator.store import create_store
    from engine.config import Settings
    from engine.llm import try_create_llm
    from engine.logging import log_event

    settings = settings or Settings.from_config()
    store = store or create_store(settings)
    if turn_llm is None:
        turn_llm = try_create_llm(settings.turn_model, temperature=0.3)
    if overseer_llm is None and settings.overseer_enabled:
        overseer_llm = try_create_llm(settings.overseer_model, temperature=0.2)
    if bus is None:
        commander = None
        if settings.event_backend != "arq":
            if commander_llm is None:
                commander_llm = try_create_llm(settings.commander_model, temperature=0.2)
            commander = Commander(store, llm=commander_llm, settings=settings)
        bus = create_event_bus(settings, commander=commander)

    handler = CallTurnHandler(store, bus, llm=turn_llm, settings=settings, overseer_llm=overseer_llm)

    app = FastAPI(
        title="Quote Commander API",
        version=os.environ.get("QC_VERSION", "0.1.0"),
        description="Multi-supplier quote negotiation calls with a cross-call Commander",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.bus = bus
    app.state.handler = handler

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        await handler.drain_overseers()
        await bus.close()
        await store.close()

    # ── Turn helpers ──────────────────────────────────────────

    async def run_webhook_turn(call_id: str, utterance: str) -> TurnResponse:
        try:
            outcome = await handler.handle_turn(call_id, utterance)
        except CallBusy:
            logger.warning("Overlapping turn for %s", call_id)
            return TurnResponse(content="Sorry, could you say that again?", status="in_progress")
        except CallNotFound:
            logger.error("No state for call %s", call_id)
            return TurnResponse.apology()
        except Exception as e:
            log_event(logger, logging.ERROR, "turn_failed", exc_info=True,
                      call_id=call_id, error=f"{type(e).__name__}: {e}")
            return TurnResponse.apology()

        state = outcome.state
        return TurnResponse(
            content=outcome.reply,
            end_call=state.is_terminal,
            current_node=state.current_node,
            status=state.status.value,
            quotes_extracted=len(state.priced_quotes()),
            needs_escalation=state.needs_human_escalation,
        )

    def summary(state) -> dict[str, Any]:
        return CallSummary(
            call_id=state.call_id,
            quote_request_id=state.quote_request_id,
            status=state.status.value,
            current_node=state.current_node,
            turn_number=state.turn_number,
            quotes_extracted=len(state.priced_quotes()),
            outcome=state.outcome,
            next_action=state.next_action.value if state.next_action else None,
        ).to_dict()

    # ── Call Initialization ───────────────────────────────────

    @app.post("/v1/calls")
    async def start_call(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": ["body must be a JSON object"]})
        init = CallInit.from_body(body if isinstance(body, dict) else {})
        errors = init.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        state, greeting = await handler.start_call(
            init.quote_request_id,
            init.to_parts(),
            call_id=init.call_id,
            supplier_id=init.supplier_id,
            supplier_name=init.supplier_name,
            supplier_phone=init.supplier_phone,
            organization_id=init.organization_id,
            caller_name=init.caller_name,
            custom_context=init.custom_context,
            custom_instructions=init.custom_instructions,
        )
        return JSONResponse(status_code=201, content={
            "callId": state.call_id,
            "quoteRequestId": state.quote_request_id,
            "currentNode": state.current_node,
            "opening_line": greeting,
        })

    # ── Turn Webhook ──────────────────────────────────────────

    @app.post("/v1/calls/turn")
    async def call_turn(request: Request):
        try:
            body = await request.json()
            turn = TurnRequest.from_body(body if isinstance(body, dict) else {})
        except Exception as e:
            logger.error("Unreadable turn webhook body: %s", e)
            return JSONResponse(content=TurnResponse.apology().to_dict())

        errors = turn.validate()
        if errors:
            logger.error("Invalid turn webhook: %s", "; ".join(errors))
            return JSONResponse(content=TurnResponse.apology().to_dict())

        response = await run_webhook_turn(turn.state_id, turn.content)
        return JSONResponse(content=response.to_dict())

    # ── OpenAI-compatible Turn ────────────────────────────────

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        try:
            body = await request.json()
            chat = ChatCompletionRequest.from_body(body if isinstance(body, dict) else {})
        except Exception as e:
            logger.error("Unreadable chat completion body: %s", e)
            chat = ChatCompletionRequest(call_id="")

        if chat.validate():
            turn = TurnResponse.apology()
        else:
            turn = await run_webhook_turn(chat.call_id, chat.utterance)

        completion = ChatCompletionResponse(
            content=turn.content, model=chat.model, end_call=turn.end_call,
        )
        if not chat.stream:
            return JSONResponse(content=completion.to_dict())

        async def events():
            for chunk in completion.chunks():
                yield f"data: {json.dumps(chunk)}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    # ── Call Lifecycle ────────────────────────────────────────

    @app.post("/v1/calls/{call_id}/end")
    async def end_call(call_id: str, request: Request):
        reason = ""
        raw = await request.body()
        if raw:
            try:
                reason = str((json.loads(raw) or {}).get("reason", ""))
            except (ValueError, AttributeError):
                return JSONResponse(status_code=422, content={"errors": ["body must be a JSON object"]})
        try:
            state = await handler.end_call(call_id, reason=reason)
        except CallNotFound:
            return JSONResponse(status_code=404, content={"detail": "Call not found"})
        except CallBusy:
            return JSONResponse(status_code=409, content={"detail": "Call turn in progress"})
        return JSONResponse(content=summary(state))

    @app.get("/v1/calls/{call_id}")
    async def get_call(call_id: str):
        state = await store.get_call(call_id)
        if state is None:
            return JSONResponse(status_code=404, content={"detail": "Call not found"})
        return JSONResponse(content=state.to_dict())

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "service": "quote-commander",
            "timestamp": time.time(),
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    from engine.logging import configure_logging
    configure_logging(level=os.environ.get("QC_LOG_LEVEL", "INFO"))
    app = create_app()
except ImportError:
    # FastAPI not installed — app creation deferred
    app = None
