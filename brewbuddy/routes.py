"""
HTTP routes for the BrewBuddy API.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from brewbuddy import __version__
from brewbuddy.auth import Credentials, authenticate, get_current_user, read_credentials
from brewbuddy.config import Settings
from brewbuddy.db import (
    DEPRECATED_GRINDERS,
    VALID_GRINDERS,
    VALID_METHODS,
    DbClient,
    DuplicateUserError,
    UserRecord,
)
from brewbuddy.dependencies import (
    get_db_client,
    get_settings_from_app,
    get_vision_client,
)
from brewbuddy.errors import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    PayloadTooLargeError,
    ServiceError,
    UnprocessableImageError,
)
from brewbuddy.sanitize import to_iso_timestamp
from brewbuddy.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    BrewResponse,
    BrewUpdateRequest,
    CoffeesResponse,
    GrinderRequest,
    GrinderResponse,
    HealthResponse,
    MethodRequest,
    MethodResponse,
    RegisteredUser,
    RegisterRequest,
    RegisterResponse,
    SaveCoffeesRequest,
    SaveCoffeesResponse,
    UserProfile,
    ValidateResponse,
    WaterHardnessRequest,
    WaterHardnessResponse,
)
from brewbuddy.sync import get_coffees, save_coffees, update_coffee
from brewbuddy.vision import (
    SUPPORTED_MEDIA_TYPES,
    NotCoffeeImageError,
    VisionClient,
    VisionServiceError,
    analyze_coffee_image,
)

logger = logging.getLogger(__name__)

router = APIRouter()

USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 50
WATER_HARDNESS_MAX = 50.0
# Base64 text of a photo, matching the 10 MB request body cap of earlier releases.
MAX_IMAGE_DATA_LENGTH = 10 * 1024 * 1024

_STARTED_AT = time.monotonic()


def _profile(user: UserRecord) -> UserProfile:
    return UserProfile(
        id=user.id,
        username=user.username,
        deviceId=user.device_id,
        grinderPreference=user.grinder_preference,
        methodPreference=user.method_preference,
        waterHardness=user.water_hardness,
        createdAt=to_iso_timestamp(user.created_at),
    )


@router.post("/auth/register", response_model=RegisterResponse)
def register(
    payload: RegisterRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings_from_app),
):
    username = (payload.username or "").strip()
    if len(username) < USERNAME_MIN_LENGTH:
        raise BadRequestError("Username must be at least 2 characters")
    if len(username) > USERNAME_MAX_LENGTH:
        raise BadRequestError("Username must be at most 50 characters")

    count = db.get_user_count()
    if count >= settings.max_users:
        raise AuthorizationError(
            f"Tester limit reached ({settings.max_users}/{settings.max_users})",
            spotsRemaining=0,
        )
    if db.username_exists(username):
        raise ConflictError("Username already taken")

    try:
        user = db.create_user(username, str(uuid.uuid4()))
    except DuplicateUserError:
        raise ConflictError("Username already taken") from None

    logger.info("Registered user %s (%d/%d)", user.username, count + 1, settings.max_users)
    return RegisterResponse(
        user=RegisteredUser(id=user.id, username=user.username, token=user.token),
        spotsRemaining=max(settings.max_users - db.get_user_count(), 0),
    )


@router.get("/auth/validate", response_model=ValidateResponse)
def validate(
    request: Request,
    credentials: Credentials = Depends(read_credentials),
    db: DbClient = Depends(get_db_client),
):
    try:
        user = authenticate(db, credentials, request.headers.get("user-agent"))
    except (AuthenticationError, AuthorizationError) as exc:
        raise type(exc)(exc.message, valid=False) from None
    db.update_last_login(user.id)
    return ValidateResponse(user=_profile(user))


@router.get("/coffees", response_model=CoffeesResponse)
def list_coffees(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    db.update_last_login(user.id)
    return CoffeesResponse(coffees=get_coffees(db, user.id))


@router.post("/coffees", response_model=SaveCoffeesResponse)
def sync_coffees(
    payload: SaveCoffeesRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    saved = save_coffees(db, user.id, payload.coffees)
    return SaveCoffeesResponse(saved=saved)


@router.patch("/brews/{coffee_id}", response_model=BrewResponse)
def edit_brew(
    coffee_id: str,
    payload: BrewUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    coffee = update_coffee(db, user.id, coffee_id, payload.model_dump(exclude_none=True))
    return BrewResponse(coffee=coffee)


@router.get("/grinder", response_model=GrinderResponse)
def get_grinder(user: UserRecord = Depends(get_current_user)):
    return GrinderResponse(grinder=user.grinder_preference)


@router.post("/grinder", response_model=GrinderResponse)
def set_grinder(
    payload: GrinderRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    grinder = DEPRECATED_GRINDERS.get(payload.grinder, payload.grinder)
    if grinder not in VALID_GRINDERS:
        raise BadRequestError(
            f"Valid grinder required. Options: {', '.join(VALID_GRINDERS)}"
        )
    db.update_grinder_preference(user.id, grinder)
    logger.info("Grinder updated: %s -> %s", user.username, grinder)
    return GrinderResponse(grinder=grinder)


@router.get("/method", response_model=MethodResponse)
def get_method(user: UserRecord = Depends(get_current_user)):
    return MethodResponse(method=user.method_preference)


@router.post("/method", response_model=MethodResponse)
def set_method(
    payload: MethodRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if payload.method not in VALID_METHODS:
        raise BadRequestError(
            f"Valid method required. Options: {', '.join(VALID_METHODS)}"
        )
    db.update_method_preference(user.id, payload.method)
    logger.info("Method updated: %s -> %s", user.username, payload.method)
    return MethodResponse(method=payload.method)


def _parse_water_hardness(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        hardness = float(value)
    except (TypeError, ValueError):
        return None
    # NaN fails both comparisons.
    if not 0 <= hardness <= WATER_HARDNESS_MAX:
        return None
    return hardness


@router.get("/water-hardness", response_model=WaterHardnessResponse)
def get_water_hardness(user: UserRecord = Depends(get_current_user)):
    return WaterHardnessResponse(waterHardness=user.water_hardness)


@router.post("/water-hardness", response_model=WaterHardnessResponse)
def set_water_hardness(
    payload: WaterHardnessRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if payload.waterHardness is None:
        raise BadRequestError("Water hardness value required")
    hardness = _parse_water_hardness(payload.waterHardness)
    if hardness is None:
        raise BadRequestError("Valid water hardness required (0-50 °dH)")
    db.update_water_hardness(user.id, hardness)
    logger.info("Water hardness updated: %s -> %s °dH", user.username, hardness)
    return WaterHardnessResponse(waterHardness=hardness)


def _decode_image(image_data: str) -> bytes:
    # Browsers send data URLs; the API also accepts bare base64.
    if image_data.startswith("data:") and "," in image_data:
        image_data = image_data.split(",", 1)[1]
    try:
        return base64.b64decode(image_data, validate=True)
    except (binascii.Error, ValueError):
        raise BadRequestError("Invalid image data") from None


@router.post("/analyze-coffee", response_model=AnalyzeResponse)
def analyze_coffee(
    payload: AnalyzeRequest,
    user: UserRecord = Depends(get_current_user),
    vision: VisionClient = Depends(get_vision_client),
):
    """Proxy a coffee bag photo to the vision model. No transaction is open here."""
    if not payload.imageData:
        raise BadRequestError("Image data required")
    if len(payload.imageData) > MAX_IMAGE_DATA_LENGTH:
        raise PayloadTooLargeError("Image too large")
    media_type = (payload.mediaType or "image/jpeg").lower()
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise BadRequestError("Unsupported image type")
    image_bytes = _decode_image(payload.imageData)

    logger.info("Analysis started for user %s", user.username)
    try:
        data = analyze_coffee_image(vision, image_bytes, media_type)
    except NotCoffeeImageError:
        raise UnprocessableImageError("not_coffee_image") from None
    except VisionServiceError as exc:
        logger.error("Analyze error for user %s: %s", user.username, exc)
        raise ServiceError("Analysis failed. Please try again.") from exc
    return AnalyzeResponse(data=data)


@router.get("/health", response_model=HealthResponse)
def health(settings: Settings = Depends(get_settings_from_app)):
    return HealthResponse(
        status="ok",
        app="brewbuddy",
        version=__version__,
        timestamp=to_iso_timestamp(datetime.now(timezone.utc)),
        uptime=round(time.monotonic() - _STARTED_AT, 3),
        environment=settings.environment,
    )
