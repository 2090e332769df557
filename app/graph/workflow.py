"""
LangGraph wiring for a receipt submission.

    START -> audit -> (stars awarded?) -> credit -> END
                              \\-> END

The graph is compiled without a checkpointer: a submission is a single
request/response transformation with nothing to resume.
"""

from __future__ import annotations

import logging
from typing import Any, Dict
from uuid import uuid4

from langgraph.graph import END, START, StateGraph

from app.graph.nodes.audit import audit_node
from app.graph.nodes.credit import credit_node
from app.graph.state import AuditEvent, AwardDecision, ReceiptClaim, SubmissionState
from app.persistence import get_store

logger = logging.getLogger(__name__)

_APP_GRAPH = None


def _route_after_audit(state: SubmissionState) -> str:
	if state.decision is not None and state.decision.granted:
		return "credit"
	return END


def build_graph() -> Any:
	"""Build and compile the submission graph."""
	graph = StateGraph(SubmissionState)
	graph.add_node("audit", audit_node)
	graph.add_node("credit", credit_node)
	graph.add_edge(START, "audit")
	graph.add_conditional_edges("audit", _route_after_audit, {"credit": "credit", END: END})
	graph.add_edge("credit", END)
	return graph.compile()


def get_graph() -> Any:
	global _APP_GRAPH
	if _APP_GRAPH is None:
		_APP_GRAPH = build_graph()
	return _APP_GRAPH


def run_submission(user_id: str, claim: ReceiptClaim) -> Dict[str, Any]:
	"""Audit a claim for a user and credit the award.

	Returns {"submission_id", "decision", "points", "audit_log"}; points is the
	user's balance after the submission. Provider errors from the audit node
	propagate.
	"""
	submission_id = f"submission-{uuid4().hex}"
	initial = SubmissionState(
		submission_id=submission_id,
		user_id=user_id,
		claim=claim,
		audit_log=[
			AuditEvent(
				node="submit",
				message="received receipt claim",
				details={"product_name": claim.product_name, "quantity": claim.quantity},
			)
		],
		current_node="submit",
	)

	result = get_graph().invoke(initial)

	decision = result.get("decision") or AwardDecision.internal_error()
	if isinstance(decision, dict):
		decision = AwardDecision.model_validate(decision)

	points = result.get("points")
	if points is None:
		user = get_store().get_user(user_id)
		points = user.points if user else 0

	return {
		"submission_id": submission_id,
		"decision": decision,
		"points": points,
		"audit_log": result.get("audit_log", []),
	}
