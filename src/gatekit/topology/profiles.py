from __future__ import annotations

from enum import Enum

from gatekit.domain.models import EndpointDescriptor, FunctionSpec


class TopologyProfile(str, Enum):
    FULL = "full"
    REDUCED = "reduced"


SERVICE_FUNCTIONS: tuple[FunctionSpec, ...] = (
    FunctionSpec(
        name="spaceLocations",
        handler="getSpaceLocations",
        description="Get a list of spaces available.",
    ),
    FunctionSpec(
        name="spaceBookings",
        handler="getSpaceBookings",
        description="Get a list of space bookings for the authenticated user.",
    ),
    FunctionSpec(
        name="cancelBooking",
        handler="cancelBooking",
        description="Cancel a given booking that the authenticated user has reserved.",
    ),
)

ENDPOINT_TABLE: tuple[EndpointDescriptor, ...] = (
    EndpointDescriptor(path="/space/locations", method="GET", function="spaceLocations", requires_auth=False),
    EndpointDescriptor(path="/space/bookings", method="GET", function="spaceBookings", requires_auth=True),
    EndpointDescriptor(path="/space/cancel/{id}", method="POST", function="cancelBooking", requires_auth=True),
)

# reduced = read-only surface, no booking mutation
_REDUCED_PATHS = {"/space/locations", "/space/bookings"}


def endpoints_for(profile: TopologyProfile) -> tuple[EndpointDescriptor, ...]:
    if profile is TopologyProfile.FULL:
        return ENDPOINT_TABLE
    return tuple(d for d in ENDPOINT_TABLE if d.path in _REDUCED_PATHS)


def functions_for(profile: TopologyProfile) -> tuple[FunctionSpec, ...]:
    used = {d.function for d in endpoints_for(profile)}
    return tuple(f for f in SERVICE_FUNCTIONS if f.name in used)
