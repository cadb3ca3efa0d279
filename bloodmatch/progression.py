import logging
import math
import uuid
from datetime import datetime, timedelta

from bloodmatch.cache import ReadThroughCache
from bloodmatch.database import DONATION_RECORDS, DONORS
from bloodmatch.errors import InvalidDonationVolume
from bloodmatch.models import (
    Badge,
    DonationRecord,
    DonorRecord,
    NotificationType,
)
from bloodmatch.notifications import Notifier

logger = logging.getLogger(__name__)

DONATION_COOLDOWN = timedelta(days=56)
ML_PER_LIFE_SAVED = 150

# highest threshold first; Platinum has no threshold
BADGE_THRESHOLDS: tuple[tuple[int, Badge], ...] = (
    (20, Badge.GOLD),
    (10, Badge.SILVER),
)


def badge_for(total_donations: int) -> Badge:
    for threshold, badge in BADGE_THRESHOLDS:
        if total_donations >= threshold:
            return badge
    return Badge.BRONZE


def next_eligible_date(last_donation_date: datetime) -> datetime:
    return last_donation_date + DONATION_COOLDOWN


def validate_volume(volume_ml: float) -> None:
    # NaN fails the comparison
    if not volume_ml > 0:
        raise InvalidDonationVolume(volume_ml)


def record_donation(
    donor: DonorRecord, volume_ml: float, donated_at: datetime
) -> DonorRecord:
    """
    Return a copy of ``donor`` with one more completed donation applied.

    Stats, cooldown and badge change together; the badge is always
    re-derived from the new total.
    """
    validate_volume(volume_ml)

    updated = donor.model_copy(deep=True)
    updated.total_donations += 1
    updated.volume_donated_ml += volume_ml
    updated.lives_saved += math.floor(volume_ml / ML_PER_LIFE_SAVED)
    updated.last_donation_date = donated_at
    updated.next_eligible_date = next_eligible_date(donated_at)
    updated.badge = badge_for(updated.total_donations)
    updated.updated_at = donated_at
    return updated


class DonorProgression:
    """Persists donations against donor profiles."""

    def __init__(self, cache: ReadThroughCache, notifier: Notifier) -> None:
        self._cache = cache
        self._notifier = notifier

    def record_donation(
        self,
        donor_id: str,
        volume_ml: float,
        donated_at: datetime,
        *,
        request_id: str | None = None,
    ) -> DonorRecord:
        validate_volume(volume_ml)

        previous_badge: list[Badge] = []

        def _apply(donor: DonorRecord) -> DonorRecord:
            previous_badge.append(donor.badge)
            return record_donation(donor, volume_ml, donated_at)

        donor = self._cache.mutate(DONORS, donor_id, _apply)

        record = DonationRecord(
            id=uuid.uuid4().hex,
            donor_id=donor.id,
            emergency_request_id=request_id,
            blood_type=donor.blood_type,
            volume_ml=volume_ml,
            donated_at=donated_at,
            donation_type="Emergency" if request_id else "Regular",
        )
        self._cache.create(DONATION_RECORDS, record)

        logger.info(
            "donor %s donated %s mL (total=%d, badge=%s)",
            donor.id,
            volume_ml,
            donor.total_donations,
            donor.badge,
        )

        self._notifier.emit(
            donor.id,
            "Thank you for donating",
            "You can donate again from "
            f"{donor.next_eligible_date.date().isoformat()}.",
            type=NotificationType.DONATION_REMINDER,
            related_entity_id=record.id,
            related_entity_type="DonationRecord",
        )
        if previous_badge and previous_badge[0] != donor.badge:
            self._notifier.emit(
                donor.id,
                f"New badge: {donor.badge}",
                f"You reached {donor.total_donations} donations.",
                type=NotificationType.SYSTEM,
                related_entity_id=donor.id,
            )

        return donor

    def donations_for(self, donor_id: str) -> list[DonationRecord]:
        records = [
            r for r in self._cache.get_all(DONATION_RECORDS) if r.donor_id == donor_id
        ]
        return sorted(records, key=lambda r: r.donated_at, reverse=True)

    def top_donors(self, limit: int = 3) -> list[DonorRecord]:
        """Leaderboard by completed donations, ties broken by donor id."""
        donors = sorted(
            self._cache.get_all(DONORS),
            key=lambda d: (-d.total_donations, d.id),
        )
        return donors[:limit]
