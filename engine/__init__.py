"""
Quote Commander - Engine Package

Per-call negotiation: the CallState model, the negotiation graph, the
turn processor and the events a call publishes.

  - engine.types: CallState, Part, ExtractedQuote, initialize_call_state
  - engine.nodes: CallNode, Signal, TRANSITIONS, node handlers
  - engine.turn: process_turn, run_turn
  - engine.events: OverseerEvent, Directive, derive_events
  - engine.llm: create_llm, complete, complete_or_fallback
"""
