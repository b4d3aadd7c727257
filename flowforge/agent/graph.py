from __future__ import annotations

from langgraph.graph import END, StateGraph

from flowforge.agent.phases import PHASE_HANDLERS, PhaseHandler, TurnContext, signals_to_state
from flowforge.domain.state import ConversationState
from flowforge.services.extraction import detect_signals, extract_scope


def build_graph(ctx):
    graph = StateGraph(ConversationState)

    async def extract(state: ConversationState) -> dict:
        extracted = extract_scope(ctx.catalog, state["user_message"])
        signals = detect_signals(state["user_message"], extracted)
        return {"extracted": extracted.to_dict(), "signals": signals_to_state(signals)}

    def route(state: ConversationState) -> str:
        return state["phase"]

    def handler_node(handler: PhaseHandler):
        async def run(state: ConversationState) -> dict:
            turn = TurnContext.from_state(ctx, state)
            await handler.handle(turn)
            return turn.to_update()

        return run

    graph.add_node("extract", extract)
    for phase, handler_cls in PHASE_HANDLERS.items():
        graph.add_node(phase.value, handler_node(handler_cls()))

    graph.set_entry_point("extract")
    # Each turn runs exactly one phase handler, chosen by the stored phase.
    graph.add_conditional_edges("extract", route, {phase.value: phase.value for phase in PHASE_HANDLERS})
    for phase in PHASE_HANDLERS:
        graph.add_edge(phase.value, END)

    return graph.compile()


async def run_graph(ctx, state: ConversationState) -> ConversationState:
    graph = build_graph(ctx)
    return await graph.ainvoke(state)
