"""
Audit node: decides how many stars a receipt claim earns.

Uses Gemini via langchain-google-genai to look at the receipt photo and check
the claimed product and quantity against it. The model returns a JSON object
{"starsAwarded", "reason"} which is validated and normalised into an
AwardDecision.

Failure handling:
- the model produced nothing usable (empty reply, non-JSON, wrong shape,
  safety block) -> zero-star decision with reason "internal processing error";
- provider errors (network, quota, auth, timeout) are NOT caught here and
  propagate to the caller.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.graph.state import AuditEvent, AwardDecision, ReceiptClaim, SubmissionState
from app.prompts.audit_prompt import AUDIT_SYSTEM_PROMPT, render_audit_prompt

load_dotenv(override=False)

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_REASON = "Receipt validated successfully."
DEFAULT_DENIAL_REASON = "The claim could not be verified against the receipt."


class StructuredOutputError(ValueError):
    """The model reply could not be mapped onto the output schema."""


class _AuditReply(BaseModel):
    """Raw model reply, before the award policy is enforced."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # strict: JSON booleans are not a star count
    stars_awarded: int = Field(..., alias="starsAwarded", strict=True)
    reason: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _response_text(content: Any) -> str:
    """Flatten a chat model reply into plain text.

    Gemini may answer with a list of content parts instead of a string.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


def _extract_json(text: str) -> Dict[str, Any]:
    """Extract a JSON object from model output, tolerating markdown fences."""
    cleaned = re.sub(r"^```(?:json)?\s*", "", text.strip())
    cleaned = re.sub(r"\s*```$", "", cleaned)
    if not cleaned:
        raise StructuredOutputError("empty model reply")

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        # Fix double curly braces ({{}} -> {}) - model escape sequence issue
        cleaned = cleaned.replace("{{", "{").replace("}}", "}")
        # Tolerate prose around the object
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise StructuredOutputError("no JSON object in model reply")
        try:
            parsed = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as exc:
            raise StructuredOutputError(f"invalid JSON in model reply: {exc}")

    if not isinstance(parsed, dict):
        raise StructuredOutputError("model reply is not a JSON object")
    return parsed


def _apply_award_policy(reply: _AuditReply, claim: ReceiptClaim) -> AwardDecision:
    """Force the reply into the all-or-nothing award rule.

    The award is either 0 or exactly quantity * stars_per_unit; anything else
    becomes a denial.
    """
    expected = claim.max_award
    reason = reply.reason.strip()

    if reply.stars_awarded == 0:
        return AwardDecision(stars_awarded=0, reason=reason or DEFAULT_DENIAL_REASON)

    if reply.stars_awarded != expected:
        logger.warning(
            f"Model awarded {reply.stars_awarded} stars for '{claim.product_name}' "
            f"x{claim.quantity} (expected 0 or {expected}); denying"
        )
        return AwardDecision(
            stars_awarded=0,
            reason=(
                f"The award of {reply.stars_awarded} stars does not match the claimed "
                f"purchase (expected {expected}); the claim could not be verified."
            ),
        )

    return AwardDecision(stars_awarded=expected, reason=reason or DEFAULT_SUCCESS_REASON)


def parse_decision(text: str, claim: ReceiptClaim) -> AwardDecision:
    """Map raw model text onto an AwardDecision.

    Raises StructuredOutputError when the text carries no usable structured output.
    """
    payload = _extract_json(text)
    try:
        reply = _AuditReply.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(f"model reply does not match the output schema: {exc}")
    return _apply_award_policy(reply, claim)


# ---------------------------------------------------------------------------
# LLM call
# ---------------------------------------------------------------------------

def _get_model() -> ChatGoogleGenerativeAI:
    """Instantiate the Gemini model from env config with fallback."""
    model_name = os.getenv("AUDIT_MODEL", "models/gemini-2.5-flash")
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_API_KEY is not set in environment/.env")

    max_retries = int(os.getenv("AUDIT_MAX_RETRIES", "2"))

    try:
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=api_key,
            temperature=0.0,
            max_retries=max_retries,
        )
    except Exception as e:
        logger.warning(f"Failed to create model {model_name}: {e}")

        fallback_models = [
            "models/gemini-2.5-flash",
            "models/gemini-2.0-flash",
            "models/gemini-2.5-pro",
        ]

        for fallback_model in fallback_models:
            if fallback_model == model_name:
                continue
            try:
                logger.info(f"Trying fallback audit model: {fallback_model}")
                return ChatGoogleGenerativeAI(
                    model=fallback_model,
                    google_api_key=api_key,
                    temperature=0.0,
                    max_retries=max_retries,
                )
            except Exception as fallback_e:
                logger.warning(f"Fallback model {fallback_model} also failed: {fallback_e}")

        raise RuntimeError(f"All audit models failed. Last error: {e}")


def build_messages(claim: ReceiptClaim) -> list:
    """Build the system + multimodal user message pair for one claim."""
    return [
        SystemMessage(content=AUDIT_SYSTEM_PROMPT),
        HumanMessage(
            content=[
                {
                    "type": "text",
                    "text": render_audit_prompt(
                        claim.product_name, claim.quantity, claim.stars_per_unit
                    ),
                },
                {"type": "image_url", "image_url": {"url": claim.photo}},
            ]
        ),
    ]


def process_receipt(claim: ReceiptClaim, model: Optional[BaseChatModel] = None) -> AwardDecision:
    """Audit one receipt claim with exactly one model call.

    Returns the fallback decision when the reply has no structured output;
    exceptions raised by the model client itself propagate.
    """
    model = model or _get_model()
    response = model.invoke(build_messages(claim))
    raw_text = _response_text(getattr(response, "content", None))

    logger.debug(f"Audit model raw response:\n{raw_text}")

    try:
        decision = parse_decision(raw_text, claim)
    except StructuredOutputError as exc:
        logger.warning(f"⚠️ Audit model returned no structured output: {exc}")
        return AwardDecision.internal_error()

    logger.info(
        f"🧾 Audited '{claim.product_name}' x{claim.quantity} @{claim.stars_per_unit}: "
        f"{decision.stars_awarded} stars ({decision.reason})"
    )
    return decision


# ---------------------------------------------------------------------------
# Graph node
# ---------------------------------------------------------------------------

def audit_node(state: SubmissionState) -> Dict[str, Any]:
    """LangGraph node: audit the claim carried by the submission state.

    Returns a dict (not a full SubmissionState) so the graph reducer can merge
    fields additively (audit_log via operator.add).
    """
    claim = state.claim
    decision = process_receipt(claim)

    audit = AuditEvent(
        node="audit",
        message=f"Awarded {decision.stars_awarded} stars",
        timestamp=datetime.now(timezone.utc),
        details={
            "product_name": claim.product_name,
            "quantity": claim.quantity,
            "stars_per_unit": claim.stars_per_unit,
            "media_type": claim.media_type,
            "reason": decision.reason,
        },
    )

    return {
        "decision": decision,
        "current_node": "audit",
        "audit_log": [audit],
    }
