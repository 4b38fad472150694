"""LangGraph assembly for one ``advance`` round."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from langgraph.graph import END, StateGraph

from userscript_orchestrator.orchestrator.state import AdvanceState

Node = Callable[[AdvanceState], AdvanceState]


class AdvanceSteps(Protocol):
    record_user_turn: Node
    call_model: Node
    execute_tool: Node
    record_reply: Node
    record_error: Node


def build_advance_graph(steps: AdvanceSteps):
    def _route_model(state: AdvanceState) -> str:
        return str(state.get("outcome", "error"))

    def _route_tool(state: AdvanceState) -> str:
        return "error" if state.get("outcome") == "error" else "done"

    graph = StateGraph(AdvanceState)

    graph.add_node("record_user_turn", steps.record_user_turn)
    graph.add_node("call_model", steps.call_model)
    graph.add_node("execute_tool", steps.execute_tool)
    graph.add_node("record_reply", steps.record_reply)
    graph.add_node("record_error", steps.record_error)

    graph.set_entry_point("record_user_turn")
    graph.add_edge("record_user_turn", "call_model")
    graph.add_conditional_edges(
        "call_model",
        _route_model,
        {
            "tool_call": "execute_tool",
            "reply": "record_reply",
            "error": "record_error",
            "cancelled": END,
        },
    )
    graph.add_conditional_edges("execute_tool", _route_tool, {"error": "record_error", "done": END})
    graph.add_edge("record_reply", END)
    graph.add_edge("record_error", END)

    return graph.compile()
