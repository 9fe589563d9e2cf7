from langgraph.graph import StateGraph, END

from studio_booking.services.turn_state import TurnState
from studio_booking.services.turn_nodes import (
    TURN_ROUTES,
    classify_node,
    route_after_classify,
    cancel_node,
    book_node,
    resend_node,
    verify_receipt_node,
    payment_status_node,
    unknown_node,
)

HANDLER_NODES = {
    "cancel_node": cancel_node,
    "book_node": book_node,
    "resend_node": resend_node,
    "verify_receipt_node": verify_receipt_node,
    "payment_status_node": payment_status_node,
    "unknown_node": unknown_node,
}


def create_turn_graph():
    """
    Create and compile the LangGraph workflow for one booking turn.
    """

    # Create the graph with our state type
    workflow = StateGraph(TurnState)

    workflow.add_node("classify_node", classify_node)
    for name, node in HANDLER_NODES.items():
        workflow.add_node(name, node)

    workflow.set_entry_point("classify_node")

    # Every intent has exactly one handler
    workflow.add_conditional_edges(
        "classify_node",
        route_after_classify,
        {node: node for node in TURN_ROUTES.values()},
    )

    # All handler nodes end the flow
    for name in HANDLER_NODES:
        workflow.add_edge(name, END)

    return workflow.compile()


# Create singleton instance
turn_graph = create_turn_graph()
