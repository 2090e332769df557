"""
Credit node: applies an awarded star count to the claimant's balance.

Only reached when the audit node granted stars (see workflow routing). The
increment is a single atomic store operation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from app.graph.state import AuditEvent, SubmissionState
from app.persistence import get_store

logger = logging.getLogger(__name__)


def credit_node(state: SubmissionState) -> Dict[str, Any]:
    """LangGraph node: add decision.stars_awarded to the user's points."""
    stars = state.decision.stars_awarded if state.decision else 0
    store = get_store()
    new_points = store.add_points(state.user_id, stars)

    logger.info(f"⭐ Credited {stars} stars to {state.user_id} (balance {new_points})")

    return {
        "points": new_points,
        "current_node": "credit",
        "audit_log": [
            AuditEvent(
                node="credit",
                message=f"Credited {stars} stars",
                timestamp=datetime.now(timezone.utc),
                details={"user_id": state.user_id, "points": new_points},
            )
        ],
    }
