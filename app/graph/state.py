"""
State schema for StarCart Rewards.

This file defines strict Pydantic models for the receipt-validation contract
(ReceiptClaim in, AwardDecision out) and the LangGraph state used by the
submission workflow. The audit log is annotated with an additive reducer
(operator.add) so each node can append entries without overwriting prior logs.

Wire names are camelCase (productName, starsAwarded, ...) to match what the
frontend sends; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

import base64
import binascii
import operator
import re
from datetime import date, datetime, timezone
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---- Utility ----
DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.+)$", re.DOTALL)

INTERNAL_ERROR_REASON = "internal processing error"


class AuditEvent(BaseModel):
	"""An entry describing a node's action on a receipt submission.

	Accumulated via the additive reducer declared on SubmissionState.audit_log.
	"""

	timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
	node: str = Field(..., description="Graph node that produced this event")
	message: str = Field(..., description="Human-readable description")
	details: Optional[Dict] = Field(
		default=None, description="Optional structured payload for debugging"
	)


class ReceiptClaim(BaseModel):
	"""A claimant's assertion: `quantity` units of `product_name`, shown on `photo`.

	- photo: data URL, "data:<mime>;base64,<payload>", mime must be an image type.
	- product_name: name of the purchased product as listed in the catalog.
	- quantity: units claimed (>= 1).
	- stars_per_unit: reward rate of the product (>= 0).
	"""

	model_config = ConfigDict(populate_by_name=True)

	photo: str = Field(..., description="Receipt photo as a base64 data URL")
	product_name: str = Field(..., alias="productName", min_length=1)
	quantity: int = Field(..., ge=1)
	stars_per_unit: int = Field(..., alias="starsPerUnit", ge=0)

	@field_validator("photo")
	@classmethod
	def _validate_photo(cls, v: str) -> str:
		match = DATA_URL_RE.match(v.strip())
		if not match:
			raise ValueError("photo must be a data URL of the form data:<mime>;base64,<payload>")
		if not match.group("mime").lower().startswith("image/"):
			raise ValueError("photo must have an image/* media type")
		try:
			raw = base64.b64decode(match.group("payload"), validate=True)
		except (binascii.Error, ValueError):
			raise ValueError("photo payload is not valid base64")
		if not raw:
			raise ValueError("photo payload is empty")
		return v.strip()

	@field_validator("product_name")
	@classmethod
	def _validate_product_name(cls, v: str) -> str:
		cleaned = v.strip()
		if not cleaned:
			raise ValueError("productName must be non-empty")
		return cleaned

	@property
	def max_award(self) -> int:
		"""Stars due when the claim is fully corroborated."""
		return self.quantity * self.stars_per_unit

	@property
	def media_type(self) -> str:
		return DATA_URL_RE.match(self.photo).group("mime")


class AwardDecision(BaseModel):
	"""Outcome of auditing a claim: a star count plus its justification.

	stars_awarded is 0 whenever the claim could not be verified; reason is
	always populated, including on denial and on internal failure.
	"""

	model_config = ConfigDict(populate_by_name=True)

	stars_awarded: int = Field(..., alias="starsAwarded", ge=0)
	reason: str = Field(..., min_length=1)

	@classmethod
	def internal_error(cls) -> "AwardDecision":
		return cls(stars_awarded=0, reason=INTERNAL_ERROR_REASON)

	@property
	def granted(self) -> bool:
		return self.stars_awarded > 0


class SubmissionState(BaseModel):
	"""State tracked across the LangGraph submission workflow for one receipt.

	Notes:
	- audit_log uses operator.add as its reducer.
	- points holds the claimant's balance after the credit node ran (or the
	  unchanged balance when nothing was awarded).
	"""

	submission_id: str = Field(..., description="Unique ID for this submission")
	user_id: str = Field(..., description="Claimant's user id")
	claim: ReceiptClaim
	decision: Optional[AwardDecision] = Field(default=None)
	points: Optional[int] = Field(default=None)
	audit_log: Annotated[List[AuditEvent], operator.add] = Field(default_factory=list)
	current_node: Optional[str] = Field(
		default=None, description="Current graph node name (for status APIs)"
	)


# ---------------------------------------------------------------------------
# Persistent records
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
	"""Client-editable profile fields (points and admin flag are not here)."""

	phone: Optional[str] = None
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	birthday: Optional[date] = None
	address: Optional[str] = None
	city: Optional[str] = None
	pharmacy: Optional[str] = None
	profile_picture: Optional[str] = None
	facebook: Optional[str] = None
	twitter: Optional[str] = None
	instagram: Optional[str] = None


PROFILE_FIELDS = tuple(UserProfile.model_fields.keys())


class User(UserProfile):
	id: str
	email: str
	points: int = Field(default=0, ge=0)
	is_admin: bool = False
	referred_by: Optional[str] = None
	created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

	@property
	def display_name(self) -> str:
		name = f"{self.first_name or ''} {self.last_name or ''}".strip()
		return name or self.email


class Product(BaseModel):
	id: str
	name: str = Field(..., min_length=1)
	stars: int = Field(..., ge=0, description="Stars awarded per unit purchased")
	image: Optional[str] = None
	created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Reward(BaseModel):
	id: str
	title: str = Field(..., min_length=1)
	name: str = Field(..., min_length=1)
	points: int = Field(..., ge=1, description="Cost in stars")
	image: Optional[str] = None
	hint: Optional[str] = None
	created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Redemption(BaseModel):
	id: str
	user_id: str
	user_name: str
	reward_id: str
	reward_name: str
	points_redeemed: int = Field(..., ge=1)
	timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
