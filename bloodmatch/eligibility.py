"""
Donor eligibility for matching.

Fails closed: any missing or malformed field makes the donor ineligible.
Blood-type compatibility is checked by the matcher against a specific
request, not here.
"""

from datetime import datetime

from bloodmatch.errors import DonorNotEligible, InvalidCoordinate
from bloodmatch.geo import validate_coordinate
from bloodmatch.models import Availability, DonorRecord, Verification, as_utc


def ineligibility_reasons(donor: DonorRecord, at_time: datetime) -> list[str]:
    reasons: list[str] = []

    if donor.verification != Verification.VERIFIED:
        reasons.append(f"verification is {donor.verification or 'unset'}")

    if donor.availability != Availability.AVAILABLE:
        reasons.append(f"availability is {donor.availability or 'unset'}")

    if donor.location is None:
        reasons.append("no location on file")
    else:
        try:
            validate_coordinate(donor.location.latitude, donor.location.longitude)
        except InvalidCoordinate:
            reasons.append("location is invalid")

    if donor.next_eligible_date is not None and as_utc(at_time) < as_utc(
        donor.next_eligible_date
    ):
        reasons.append(
            "in donation cooldown until "
            f"{donor.next_eligible_date.isoformat()}"
        )

    return reasons


def is_eligible(donor: DonorRecord, at_time: datetime) -> bool:
    return not ineligibility_reasons(donor, at_time)


def ensure_eligible(donor: DonorRecord, at_time: datetime) -> None:
    reasons = ineligibility_reasons(donor, at_time)
    if reasons:
        raise DonorNotEligible(donor.id, reasons)
