from collections.abc import Iterable
from datetime import datetime

from bloodmatch.compatibility import can_donate_to, compatible_request_types
from bloodmatch.eligibility import is_eligible
from bloodmatch.errors import InvalidCoordinate
from bloodmatch.geo import point_distance_km, validate_coordinate
from bloodmatch.lifecycle import active_requests
from bloodmatch.models import Candidate, DonorRecord, EmergencyRequest


def find_candidates(
    request: EmergencyRequest,
    donors: Iterable[DonorRecord],
    max_radius_km: float,
    at_time: datetime,
) -> list[Candidate]:
    """
    Eligible donors for a request, nearest first (ties broken by donor id).

    Pure query over the supplied snapshot. Raises InvalidCoordinate if the
    request's own point is malformed; an empty result is not an error.
    """
    validate_coordinate(request.location.latitude, request.location.longitude)

    candidates = []
    for donor in donors:
        if not can_donate_to(donor.blood_type, request.blood_type):
            continue
        # also guarantees donor.location is present and in range
        if not is_eligible(donor, at_time):
            continue

        distance = point_distance_km(request.location, donor.location)
        if distance > max_radius_km:
            continue
        candidates.append(Candidate(donor, distance))

    candidates.sort(key=lambda c: (c.distance_km, c.donor.id))
    return candidates


def find_requests_for_donor(
    donor: DonorRecord,
    requests: Iterable[EmergencyRequest],
    max_radius_km: float,
    at_time: datetime,
) -> list[tuple[EmergencyRequest, float]]:
    """
    Open requests a donor could serve, nearest first. Requests with a
    malformed point are skipped rather than failing the donor's feed.
    """
    if donor.location is None:
        return []
    validate_coordinate(donor.location.latitude, donor.location.longitude)

    wanted = compatible_request_types(donor.blood_type)
    found = []
    for request in active_requests(requests, at_time):
        if request.blood_type not in wanted:
            continue
        try:
            distance = point_distance_km(donor.location, request.location)
        except InvalidCoordinate:
            continue
        if distance <= max_radius_km:
            found.append((request, distance))

    found.sort(key=lambda pair: (pair[1], pair[0].id))
    return found
