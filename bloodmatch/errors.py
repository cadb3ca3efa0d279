class BloodMatchError(Exception):
    """Base class for errors raised by the matching engine."""


class InvalidCoordinate(BloodMatchError):
    def __init__(self, latitude: float, longitude: float) -> None:
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(
            f"Invalid coordinate ({latitude}, {longitude}): latitude must be "
            "within ±90 and longitude within ±180"
        )


class InvalidTransition(BloodMatchError):
    def __init__(self, from_status: str, attempted: str) -> None:
        self.from_status = from_status
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} a request that is {from_status.lower()}"
        )

    @property
    def user_message(self) -> str:
        if self.from_status in ("Fulfilled", "Cancelled", "Expired"):
            return f"This request is already {self.from_status.lower()}."
        return (
            f"This request is {self.from_status.lower()} and cannot be "
            f"moved by '{self.attempted}' right now."
        )


class DonorNotEligible(BloodMatchError):
    def __init__(self, donor_id: str, reasons: list[str]) -> None:
        self.donor_id = donor_id
        self.reasons = reasons
        super().__init__(
            f"Donor {donor_id} is not eligible: {', '.join(reasons)}"
        )


class RecordNotFound(BloodMatchError):
    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record {record_id} not found")


class InvalidDonationVolume(BloodMatchError):
    def __init__(self, volume_ml: float) -> None:
        self.volume_ml = volume_ml
        super().__init__(
            f"Donation volume must be positive, got {volume_ml} mL"
        )
