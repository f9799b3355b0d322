"""
Pydantic schemas for the BrewBuddy API.

Field names follow the JSON the web client already speaks (camelCase).
Credentials may also travel in request bodies, so extra keys are ignored.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel


class RegisterRequest(BaseModel):
    username: Optional[str] = None


class RegisteredUser(BaseModel):
    id: int
    username: str
    token: str


class RegisterResponse(BaseModel):
    success: bool = True
    user: RegisteredUser
    spotsRemaining: int


class UserProfile(BaseModel):
    id: int
    username: str
    deviceId: Optional[str] = None
    grinderPreference: str
    methodPreference: str
    waterHardness: Optional[float] = None
    createdAt: str


class ValidateResponse(BaseModel):
    success: bool = True
    valid: bool = True
    user: UserProfile


class SaveCoffeesRequest(BaseModel):
    coffees: list[Any]


class CoffeesResponse(BaseModel):
    success: bool = True
    coffees: list[dict]


class SaveCoffeesResponse(BaseModel):
    success: bool = True
    saved: int


class BrewUpdateRequest(BaseModel):
    coffee_name: Optional[Any] = None
    origin: Optional[Any] = None
    roastery: Optional[Any] = None


class BrewResponse(BaseModel):
    success: bool = True
    coffee: dict


class GrinderRequest(BaseModel):
    grinder: Optional[str] = None


class GrinderResponse(BaseModel):
    success: bool = True
    grinder: str


class MethodRequest(BaseModel):
    method: Optional[str] = None


class MethodResponse(BaseModel):
    success: bool = True
    method: str


class WaterHardnessRequest(BaseModel):
    waterHardness: Optional[Any] = None


class WaterHardnessResponse(BaseModel):
    success: bool = True
    waterHardness: Optional[float] = None


class AnalyzeRequest(BaseModel):
    imageData: Optional[str] = None
    mediaType: Optional[str] = None


class AnalyzeResponse(BaseModel):
    success: bool = True
    data: dict


class HealthResponse(BaseModel):
    status: Literal["ok"]
    app: str
    version: str
    timestamp: str
    uptime: float
    environment: str
