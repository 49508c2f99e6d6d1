from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from dispatch.exceptions import ValidationError
from states.fsm_states import CriticalLevel, VehicleStatus
from utils.validators import is_valid_latitude, is_valid_longitude

DEFAULT_ADDRESS = "Unknown location"
DEFAULT_EMERGENCY_DETAILS = "Emergency assistance needed"

# Vehicle status spelling used by older driver apps
_LEGACY_VEHICLE_STATUSES = {"on_route": VehicleStatus.EN_ROUTE.value}

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _Coordinates(_Payload):
    latitude: float
    longitude: float

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not is_valid_latitude(value):
            raise ValueError("latitude must be within [-90, 90]")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not is_valid_longitude(value):
            raise ValueError("longitude must be within [-180, 180]")
        return value


class LocationPayload(_Coordinates):
    address: Optional[str] = None


class EmergencyRequestPayload(_Payload):
    user_id: Optional[int | str] = Field(default=None, alias="userId")
    location: LocationPayload
    emergency_details: Optional[str] = Field(default=None, alias="emergencyDetails")
    patient_count: int = Field(default=1, ge=1, alias="patientCount")
    critical_level: CriticalLevel = Field(default=CriticalLevel.MEDIUM, alias="criticalLevel")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Flat latitude/longitude/address are accepted in place of a location object
        if data.get("location") is None:
            if data.get("latitude") is None or data.get("longitude") is None:
                raise ValueError("Location is required")
            data["location"] = {
                "latitude": data.get("latitude"),
                "longitude": data.get("longitude"),
                "address": data.get("address"),
            }
        # Explicit nulls mean "use the default"
        for key in ("patientCount", "patient_count", "criticalLevel", "critical_level"):
            if key in data and data[key] is None:
                del data[key]
        return data


class AcceptRequestPayload(_Payload):
    request_id: int = Field(alias="requestId")
    vehicle_id: str = Field(min_length=1, alias="vehicleId")


class RequestStatusPayload(_Payload):
    request_id: int = Field(alias="requestId")
    status: str = Field(min_length=1)


class CancelRequestPayload(_Payload):
    request_id: int = Field(alias="requestId")


class VehicleStatusPayload(_Payload):
    vehicle_id: str = Field(min_length=1, alias="vehicleId")
    status: VehicleStatus

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value: Any) -> Any:
        return _LEGACY_VEHICLE_STATUSES.get(value, value)


class VehicleLocationPayload(_Coordinates):
    vehicle_id: str = Field(min_length=1, alias="vehicleId")


class AuthenticatePayload(_Payload):
    token: str = Field(min_length=1)


def _describe(error: dict[str, Any]) -> str:
    message = error.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {message}" if location else message


def parse_payload(model: Type[PayloadT], data: Any) -> PayloadT:
    """Validates an inbound event payload, raising ValidationError with a readable message."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("; ".join(_describe(err) for err in e.errors())) from e
