"""
FastAPI backend for StarCart Rewards.

Exposes:
- GET /                      : health/info
- POST /auth/signup          : register (welcome stars + referral bonus)
- POST /auth/login           : exchange email/password for a bearer token
- POST /auth/logout          : revoke the current token
- GET|PATCH /users/me        : own profile
- GET /users/me/summary      : balance and next reward
- GET /users, /users/{id}    : admin user directory
- /products, /rewards        : catalog (admins create/delete)
- POST /receipts             : upload a receipt photo -> audit + credit stars
- POST /receipts/audit       : admin, run the bare decision on a JSON claim
- /redemptions               : redeem a reward / admin list
- /settings/webhook          : admin webhook URL
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import (
	BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from app import auth
from app.graph.nodes.audit import process_receipt
from app.graph.state import AwardDecision, ReceiptClaim, User, UserProfile
from app.graph.workflow import run_submission
from app.persistence import (
	DuplicateEmailError,
	InsufficientStarsError,
	NotFoundError,
	PersistenceError,
	get_store,
	use_in_memory,
)
from app.uploads import (
	MEDIA_URL_PREFIX,
	delete_catalog_image,
	read_image_upload,
	save_catalog_image,
	to_data_url,
	uploads_dir,
)
from app.webhook import send_webhook

# Load .env early so USE_IN_MEMORY and other settings are available
load_dotenv(override=False)

logging.basicConfig(
	level=os.getenv("LOG_LEVEL", "INFO").upper(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------
PROCESSING_FAILED_DETAIL = "We could not process your receipt. Please try again."


def _int_env(name: str, default: int) -> int:
	return int(os.getenv(name, str(default)))


def _receipt_rate_limit() -> str:
	return os.getenv("RECEIPT_RATE_LIMIT", "30/hour")


# Rate limiter, keyed by client IP
limiter = Limiter(key_func=get_remote_address)

# FastAPI app singleton
app = FastAPI(title="StarCart Rewards", version="0.1")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS: allow the frontend (dev & production)
_allowed_origins = [
	"http://localhost:3000",
	"http://127.0.0.1:3000",
]
_prod_origin = os.getenv("FRONTEND_ORIGIN")
if _prod_origin:
	_allowed_origins.append(_prod_origin)

app.add_middleware(
	CORSMiddleware,
	allow_origins=_allowed_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request, call_next):
		response = await call_next(request)
		response.headers["X-Content-Type-Options"] = "nosniff"
		response.headers["X-Frame-Options"] = "DENY"
		response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
		response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
		return response

app.add_middleware(SecurityHeadersMiddleware)

# Catalog images
app.mount(MEDIA_URL_PREFIX, StaticFiles(directory=str(uploads_dir())), name="media")


def _user_dict(user: User) -> Dict[str, Any]:
	return user.model_dump(mode="json")


def _decision_dict(decision: AwardDecision) -> Dict[str, Any]:
	return decision.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SignupRequest(UserProfile):
	"""Payload for POST /auth/signup."""
	email: str
	password: str = Field(..., min_length=6)
	ref: Optional[str] = None  # referrer's user id, from the shared link

	@field_validator("email")
	@classmethod
	def _validate_email(cls, v: str) -> str:
		cleaned = v.strip()
		local, _, domain = cleaned.partition("@")
		if not local or "." not in domain or " " in cleaned:
			raise ValueError("email must be a valid email address")
		return cleaned


class LoginRequest(BaseModel):
	email: str
	password: str


class RedemptionRequest(BaseModel):
	"""Payload for POST /redemptions; profile carries delivery details."""
	reward_id: str
	profile: UserProfile = Field(default_factory=UserProfile)


class WebhookSettingRequest(BaseModel):
	url: str

	@field_validator("url")
	@classmethod
	def _validate_url(cls, v: str) -> str:
		cleaned = v.strip()
		if not cleaned.startswith(("http://", "https://")):
			raise ValueError("url must start with http:// or https://")
		return cleaned


# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

@app.get("/")
def info() -> Dict[str, Any]:
	return {
		"status": "ok",
		"version": app.version,
		"endpoints": [
			"/", "/auth/signup", "/auth/login", "/users/me", "/products",
			"/rewards", "/receipts", "/redemptions",
		],
		"mode": "in-memory" if use_in_memory() else "postgres",
	}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.post("/auth/signup", status_code=201)
def signup(body: SignupRequest, background_tasks: BackgroundTasks) -> Dict[str, Any]:
	store = get_store()
	profile = body.model_dump(include=set(UserProfile.model_fields))

	referrer = store.get_user(body.ref) if body.ref else None
	if body.ref and referrer is None:
		logger.warning(f"Ignoring unknown referral code {body.ref!r}")

	try:
		user = store.create_user(
			email=body.email,
			password_hash=auth.hash_password(body.password),
			profile=profile,
			points=_int_env("WELCOME_STARS", 200),
			is_admin=body.email.lower() in auth.admin_emails(),
			referred_by=referrer.id if referrer else None,
		)
	except DuplicateEmailError:
		raise HTTPException(status_code=409, detail="An account with this email already exists.")

	background_tasks.add_task(send_webhook, "user.created", _user_dict(user))

	if referrer is not None:
		bonus = _int_env("REFERRAL_BONUS_STARS", 100)
		new_points = store.add_points(referrer.id, bonus)
		logger.info(f"⭐ Referral bonus of {bonus} stars to {referrer.id} for {user.id}")
		background_tasks.add_task(
			send_webhook, "user.updated", {"id": referrer.id, "points": new_points}
		)

	token = auth.create_session(user.id)
	return {"token": token, "user": _user_dict(user)}


@app.post("/auth/login")
def login(body: LoginRequest) -> Dict[str, Any]:
	user = auth.authenticate(body.email, body.password)
	if user is None:
		raise HTTPException(status_code=401, detail="Invalid email or password.")
	token = auth.create_session(user.id)
	return {"token": token, "user": _user_dict(user)}


@app.post("/auth/logout", status_code=204)
def logout(token: str = Depends(auth.bearer_token)) -> None:
	auth.logout(token)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@app.get("/users/me")
def get_me(user: User = Depends(auth.get_current_user)) -> Dict[str, Any]:
	return _user_dict(user)


@app.patch("/users/me")
def update_me(
	body: UserProfile,
	background_tasks: BackgroundTasks,
	user: User = Depends(auth.get_current_user),
) -> Dict[str, Any]:
	fields = body.model_dump(exclude_unset=True)
	updated = get_store().update_user(user.id, fields)
	background_tasks.add_task(send_webhook, "user.updated", {"id": user.id, **body.model_dump(mode="json", exclude_unset=True)})
	return _user_dict(updated)


@app.get("/users/me/summary")
def get_summary(user: User = Depends(auth.get_current_user)) -> Dict[str, Any]:
	rewards = get_store().list_rewards()
	next_reward = next((r for r in sorted(rewards, key=lambda r: r.points) if r.points > user.points), None)
	return {
		"points": user.points,
		"next_reward": next_reward.model_dump(mode="json") if next_reward else None,
		"points_needed": next_reward.points - user.points if next_reward else 0,
	}


@app.get("/users")
def list_users(admin: User = Depends(auth.require_admin)) -> List[Dict[str, Any]]:
	return [_user_dict(u) for u in get_store().list_users()]


@app.get("/users/{user_id}")
def get_user(user_id: str, admin: User = Depends(auth.require_admin)) -> Dict[str, Any]:
	user = get_store().get_user(user_id)
	if user is None:
		raise HTTPException(status_code=404, detail="User not found.")
	return _user_dict(user)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@app.get("/products")
def list_products(user: User = Depends(auth.get_current_user)) -> List[Dict[str, Any]]:
	return [p.model_dump(mode="json") for p in get_store().list_products()]


@app.post("/products", status_code=201)
async def create_product(
	name: str = Form(..., min_length=1),
	stars: int = Form(..., ge=0),
	image: UploadFile = File(...),
	admin: User = Depends(auth.require_admin),
) -> Dict[str, Any]:
	content = await read_image_upload(image)
	image_url = save_catalog_image("products", content, image.filename)
	product = get_store().add_product(name=name.strip(), stars=stars, image=image_url)
	return product.model_dump(mode="json")


@app.delete("/products/{product_id}", status_code=204)
def delete_product(product_id: str, admin: User = Depends(auth.require_admin)) -> None:
	store = get_store()
	product = store.get_product(product_id)
	if product is None or not store.delete_product(product_id):
		raise HTTPException(status_code=404, detail="Product not found.")
	delete_catalog_image(product.image)


@app.get("/rewards")
def list_rewards(user: User = Depends(auth.get_current_user)) -> List[Dict[str, Any]]:
	return [r.model_dump(mode="json") for r in get_store().list_rewards()]


@app.post("/rewards", status_code=201)
async def create_reward(
	title: str = Form(..., min_length=1),
	name: str = Form(..., min_length=1),
	points: int = Form(..., ge=1),
	hint: Optional[str] = Form(default=None),
	image: UploadFile = File(...),
	admin: User = Depends(auth.require_admin),
) -> Dict[str, Any]:
	content = await read_image_upload(image)
	image_url = save_catalog_image("rewards", content, image.filename)
	reward = get_store().add_reward(
		title=title.strip(), name=name.strip(), points=points, image=image_url, hint=hint,
	)
	return reward.model_dump(mode="json")


@app.delete("/rewards/{reward_id}", status_code=204)
def delete_reward(reward_id: str, admin: User = Depends(auth.require_admin)) -> None:
	store = get_store()
	reward = store.get_reward(reward_id)
	if reward is None or not store.delete_reward(reward_id):
		raise HTTPException(status_code=404, detail="Reward not found.")
	delete_catalog_image(reward.image)


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

@app.post("/receipts")
@limiter.limit(_receipt_rate_limit)
async def submit_receipt(
	request: Request,
	background_tasks: BackgroundTasks,
	product_id: str = Form(...),
	quantity: int = Form(...),
	file: UploadFile = File(...),
	user: User = Depends(auth.get_current_user),
) -> Dict[str, Any]:
	product = get_store().get_product(product_id)
	if product is None:
		raise HTTPException(status_code=404, detail="Product not found.")

	content = await read_image_upload(file)
	try:
		claim = ReceiptClaim(
			photo=to_data_url(content, file.content_type),
			product_name=product.name,
			quantity=quantity,
			stars_per_unit=product.stars,
		)
	except ValidationError as e:
		raise HTTPException(status_code=400, detail=f"Invalid receipt claim: {e.errors()[0]['msg']}")

	try:
		result = await run_in_threadpool(run_submission, user.id, claim)
	except PersistenceError as e:
		logger.error(f"❌ Failed to credit stars for {user.id}: {e}")
		raise HTTPException(status_code=500, detail="Failed to update your stars. Please try again.")
	except Exception:
		logger.exception("Receipt processing failed")
		raise HTTPException(status_code=502, detail=PROCESSING_FAILED_DETAIL)

	decision: AwardDecision = result["decision"]
	if decision.granted:
		background_tasks.add_task(
			send_webhook, "user.updated", {"id": user.id, "points": result["points"]}
		)

	return {
		"submission_id": result["submission_id"],
		"decision": _decision_dict(decision),
		"points": result["points"],
	}


@app.post("/receipts/audit")
async def audit_claim(claim: ReceiptClaim, admin: User = Depends(auth.require_admin)) -> Dict[str, Any]:
	"""Run the decision contract alone; no balance is touched."""
	try:
		decision = await run_in_threadpool(process_receipt, claim)
	except Exception:
		logger.exception("Receipt audit failed")
		raise HTTPException(status_code=502, detail=PROCESSING_FAILED_DETAIL)
	return _decision_dict(decision)


# ---------------------------------------------------------------------------
# Redemptions
# ---------------------------------------------------------------------------

@app.post("/redemptions", status_code=201)
def redeem_reward(
	body: RedemptionRequest,
	background_tasks: BackgroundTasks,
	user: User = Depends(auth.get_current_user),
) -> Dict[str, Any]:
	store = get_store()
	reward = store.get_reward(body.reward_id)
	if reward is None:
		raise HTTPException(status_code=404, detail="Reward not found.")

	try:
		updated, redemption = store.redeem(
			user.id, reward, body.profile.model_dump(exclude_unset=True)
		)
	except InsufficientStarsError:
		raise HTTPException(
			status_code=409,
			detail="You don't have enough stars to redeem this reward.",
		)
	except NotFoundError:
		raise HTTPException(status_code=404, detail="User not found.")

	background_tasks.add_task(send_webhook, "user.updated", _user_dict(updated))
	background_tasks.add_task(send_webhook, "redemption.created", redemption.model_dump(mode="json"))

	return {
		"redemption": redemption.model_dump(mode="json"),
		"points": updated.points,
	}


@app.get("/redemptions")
def list_redemptions(admin: User = Depends(auth.require_admin)) -> List[Dict[str, Any]]:
	return [r.model_dump(mode="json") for r in get_store().list_redemptions()]


# ---------------------------------------------------------------------------
# Webhook settings
# ---------------------------------------------------------------------------

@app.get("/settings/webhook")
def get_webhook(admin: User = Depends(auth.require_admin)) -> Dict[str, Any]:
	return {"url": get_store().get_webhook_url()}


@app.put("/settings/webhook")
def save_webhook(body: WebhookSettingRequest, admin: User = Depends(auth.require_admin)) -> Dict[str, Any]:
	get_store().save_webhook_url(body.url)
	logger.info(f"Webhook URL updated by {admin.id}")
	return {"url": body.url}


@app.delete("/settings/webhook", status_code=204)
def delete_webhook(admin: User = Depends(auth.require_admin)) -> None:
	get_store().delete_webhook_url()
